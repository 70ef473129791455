"""Seeded point placement along routes and inside bounding boxes.

Everything here is a heuristic: rejection sampling under a spacing constraint
may return fewer points than asked for, and ``cluster_points`` is a single
greedy pass, not an optimal clustering. Given the same seed and inputs the
output is identical on every machine, which is what makes auto-placed
checkpoints auditable.
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass
from typing import Callable, Sequence

from visit_proof.geo import distance_m, point_at_distance, polyline_length_m
from visit_proof.models import BoundingBox, Coordinate
from visit_proof.timeutils import now_ms

logger = logging.getLogger(__name__)

_MASK32 = 0xFFFFFFFF


def _imul(a: int, b: int) -> int:
    return (a * b) & _MASK32


class Mulberry32:
    """Mulberry32 PRNG: 32-bit state, xorshift-multiply output mixing.

    Calling the instance returns a float in [0, 1).
    """

    __slots__ = ("_state",)

    def __init__(self, seed: int) -> None:
        self._state = seed & _MASK32

    def __call__(self) -> float:
        self._state = (self._state + 0x6D2B79F5) & _MASK32
        t = self._state
        t = _imul(t ^ (t >> 15), t | 1)
        t ^= (t + _imul(t ^ (t >> 7), t | 61)) & _MASK32
        return ((t ^ (t >> 14)) & _MASK32) / 4294967296.0


@dataclass(frozen=True, slots=True)
class SamplingOptions:
    """Parameters for rejection sampling.

    Attributes:
        count: Number of points wanted.
        min_distance_m: Minimum distance between any two accepted points.
        seed: PRNG seed. If None a time-based seed is picked and logged.
        max_tries: Candidate budget; defaults to ``count * 200``.
    """

    count: int
    min_distance_m: float
    seed: int | None = None
    max_tries: int | None = None

    def resolved_seed(self) -> int:
        if self.seed is not None:
            return self.seed
        seed = now_ms() & _MASK32
        logger.info("No sampling seed given, using %s", seed)
        return seed

    def resolved_max_tries(self) -> int:
        return self.max_tries if self.max_tries is not None else self.count * 200


def _far_enough(point: Coordinate, accepted: Sequence[Coordinate], min_distance_m: float) -> bool:
    return all(distance_m(point, other) >= min_distance_m for other in accepted)


def sample_points_along_polylines(
    polylines: Sequence[Sequence[Coordinate]],
    options: SamplingOptions,
) -> list[Coordinate]:
    """Sample spaced points along a set of polylines.

    A polyline is picked with probability proportional to its length, then a
    uniform distance along it is interpolated. Candidates closer than
    ``min_distance_m`` to an accepted point are rejected.

    Returns:
        Up to ``options.count`` points. Fewer are returned when ``max_tries``
        candidates were drawn without filling the quota.
    """

    lines = [(line, polyline_length_m(line)) for line in polylines]
    lines = [(line, length) for line, length in lines if length > 0]
    if not lines or options.count <= 0:
        return []

    total = sum(length for _, length in lines)
    cumulative: list[float] = []
    acc = 0.0
    for _, length in lines:
        acc += length / total
        cumulative.append(acc)

    rng = Mulberry32(options.resolved_seed())
    max_tries = options.resolved_max_tries()
    accepted: list[Coordinate] = []
    tries = 0
    while len(accepted) < options.count and tries < max_tries:
        tries += 1
        idx = bisect.bisect_left(cumulative, rng())
        if idx >= len(lines):
            # float rounding can leave the last cumulative a hair below 1.0
            idx = len(lines) - 1
        line, length = lines[idx]
        point = point_at_distance(line, rng() * length)
        if point is None:
            continue
        if _far_enough(point, accepted, options.min_distance_m):
            accepted.append(point)

    if len(accepted) < options.count:
        logger.info("Sampling stopped after %s tries with %s/%s points", tries, len(accepted), options.count)
    return accepted


def sample_points_in_bounds(bounds: BoundingBox, options: SamplingOptions) -> list[Coordinate]:
    """Bounding-box analogue of ``sample_points_along_polylines``."""

    if options.count <= 0:
        return []

    rng = Mulberry32(options.resolved_seed())
    max_tries = options.resolved_max_tries()
    accepted: list[Coordinate] = []
    tries = 0
    while len(accepted) < options.count and tries < max_tries:
        tries += 1
        lat = bounds.south + rng() * (bounds.north - bounds.south)
        lng = bounds.west + rng() * (bounds.east - bounds.west)
        point = Coordinate(lat=lat, lng=lng)
        if _far_enough(point, accepted, options.min_distance_m):
            accepted.append(point)
    return accepted


def sample_points_at_interval(
    polyline: Sequence[Coordinate],
    interval_m: float,
    include_endpoints: bool = True,
) -> list[Coordinate]:
    """Points every ``interval_m`` meters along the polyline."""

    if len(polyline) < 2:
        return list(polyline)
    if interval_m <= 0:
        raise ValueError(f"interval_m must be > 0, got {interval_m}")

    total = polyline_length_m(polyline)
    out: list[Coordinate] = [polyline[0]] if include_endpoints else []
    d = interval_m
    while d < total:
        p = point_at_distance(polyline, d)
        if p is not None:
            out.append(p)
        d += interval_m
    if include_endpoints and out[-1] != polyline[-1]:
        out.append(polyline[-1])
    return out


def evenly_spaced_points(
    polyline: Sequence[Coordinate],
    count: int,
    include_endpoints: bool = True,
) -> list[Coordinate]:
    """``count`` points spread evenly by distance along the polyline."""

    if len(polyline) < 2:
        return list(polyline)
    if count <= 0:
        return []

    total = polyline_length_m(polyline)
    if include_endpoints and count >= 2:
        step = total / (count - 1)
        middle = [point_at_distance(polyline, step * i) for i in range(1, count - 1)]
        return [polyline[0], *(p for p in middle if p is not None), polyline[-1]]

    step = total / (count + 1)
    points = [point_at_distance(polyline, step * i) for i in range(1, count + 1)]
    return [p for p in points if p is not None]


def cluster_points(points: Sequence[Coordinate], max_distance_m: float) -> list[Coordinate]:
    """Greedy single-pass clustering; returns one centroid per cluster.

    Each unassigned point seeds a cluster and absorbs every later unassigned
    point within ``max_distance_m`` of the seed. The result depends on input
    order and is not a minimal clustering.
    """

    used = [False] * len(points)
    centroids: list[Coordinate] = []
    for i, seed_point in enumerate(points):
        if used[i]:
            continue
        used[i] = True
        members = [seed_point]
        for j in range(i + 1, len(points)):
            if not used[j] and distance_m(seed_point, points[j]) <= max_distance_m:
                used[j] = True
                members.append(points[j])
        centroids.append(
            Coordinate(
                lat=sum(p.lat for p in members) / len(members),
                lng=sum(p.lng for p in members) / len(members),
            )
        )
    return centroids


def filter_points_by_distance(
    points: Sequence[Coordinate],
    min_distance_m: float,
    priority: Callable[[Coordinate, int], float] | None = None,
) -> list[Coordinate]:
    """Keep points so that no two kept points are closer than ``min_distance_m``.

    With ``priority`` given, higher-priority points are considered first
    (ties keep input order).
    """

    order = list(range(len(points)))
    if priority is not None:
        order.sort(key=lambda i: -priority(points[i], i))

    kept: list[Coordinate] = []
    for i in order:
        if _far_enough(points[i], kept, min_distance_m):
            kept.append(points[i])
    return kept
