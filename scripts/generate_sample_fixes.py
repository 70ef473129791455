from __future__ import annotations

import argparse
import random
from pathlib import Path
from typing import Final

from visit_proof.csv_io import write_position_fixes
from visit_proof.geo import point_at_distance, polyline_length_m
from visit_proof.models import DEFAULT_TZ, Coordinate, PositionFix, Route
from visit_proof.routes import save_route
from visit_proof.timeutils import parse_epoch_ms

# meters per degree of latitude, good enough for jitter
_M_PER_DEG: Final[float] = 111_320.0

DEMO_POLYLINE: Final[tuple[Coordinate, ...]] = (
    Coordinate(51.1802, 8.4822),
    Coordinate(51.1822, 8.4872),
    Coordinate(51.1845, 8.4920),
    Coordinate(51.1871, 8.4951),
    Coordinate(51.1890, 8.5010),
)


def generate_fixes(
    *,
    polyline: tuple[Coordinate, ...],
    seed: int,
    start_ms: int,
    speed_mps: float,
    step_seconds: float,
) -> list[PositionFix]:
    """Walk the polyline at roughly constant speed, with GPS-like jitter and bad fixes."""

    rng = random.Random(seed)
    total = polyline_length_m(polyline)
    out: list[PositionFix] = []
    t_ms = start_ms
    walked = 0.0

    while walked <= total:
        p = point_at_distance(polyline, walked)
        if p is None:
            break

        # Occasionally a poor fix (urban canyon, indoors)
        acc = rng.choice([4.0, 6.0, 8.0, 12.0, 20.0]) if rng.random() > 0.07 else rng.uniform(60.0, 150.0)
        jitter_m = rng.uniform(0.0, min(acc, 25.0)) * 0.5
        lat = p.lat + rng.uniform(-1.0, 1.0) * jitter_m / _M_PER_DEG
        lng = p.lng + rng.uniform(-1.0, 1.0) * jitter_m / _M_PER_DEG

        out.append(PositionFix(coordinate=Coordinate(lat, lng), accuracy_m=acc, timestamp_ms=t_ms))

        dt = step_seconds * rng.uniform(0.7, 1.3)
        t_ms += int(dt * 1000)
        walked += speed_mps * dt

    return out


def main() -> int:
    p = argparse.ArgumentParser(description="Generate a demo route JSON and a matching position-fix CSV.")
    p.add_argument("--route-out", type=str, default="sample_data/route.json", help="Output route JSON path")
    p.add_argument("--fixes-out", type=str, default="sample_data/fixes.csv", help="Output fixes CSV path")
    p.add_argument("--seed", type=int, default=42, help="Random seed (reproducible)")
    p.add_argument("--speed-mps", type=float, default=1.4, help="Walking speed in m/s")
    p.add_argument("--step-seconds", type=float, default=5.0, help="Seconds between fixes")
    p.add_argument(
        "--start",
        type=str,
        default="2025-06-01 09:00:00",
        help=f"Start local time in {DEFAULT_TZ}, e.g. '2025-06-01 09:00:00'",
    )
    args = p.parse_args()

    route = Route(
        id="demo-route",
        name="Demo loop",
        polyline=DEMO_POLYLINE,
        distance_m=polyline_length_m(DEMO_POLYLINE),
        mode="walking",
    )
    fixes = generate_fixes(
        polyline=DEMO_POLYLINE,
        seed=args.seed,
        start_ms=parse_epoch_ms(args.start, DEFAULT_TZ),
        speed_mps=args.speed_mps,
        step_seconds=args.step_seconds,
    )

    save_route(route, args.route_out)
    write_position_fixes(fixes, args.fixes_out)
    print(f"Generated: {Path(args.route_out)} ({route.distance_m:.0f} m), {Path(args.fixes_out)} (rows={len(fixes)}, seed={args.seed})")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
