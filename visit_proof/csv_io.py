"""CSV input utilities for recorded position fixes."""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Sequence

from visit_proof.models import Coordinate, PositionFix

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CsvSummary:
    """Quick summary of CSV parsing."""

    rows_total: int
    rows_parsed: int
    rows_skipped: int
    fieldnames: Sequence[str]


def _parse_int(value: str) -> int:
    return int(value.strip())


def _parse_float(value: str) -> float:
    return float(value.strip())


def _parse_accuracy(value: str | None) -> float | None:
    if value is None or not value.strip():
        return None
    acc = _parse_float(value)
    # some exports use -1.0 for "unknown"
    return acc if acc >= 0 else None


def _row_to_fix(row: dict[str, str]) -> PositionFix:
    return PositionFix(
        coordinate=Coordinate(lat=_parse_float(row["latitude"]), lng=_parse_float(row["longitude"])),
        accuracy_m=_parse_accuracy(row.get("horizontalAccuracy")),
        timestamp_ms=_parse_int(row["geoTime"]),
    )


def iter_position_fixes(csv_path: str | Path) -> Iterator[PositionFix]:
    """Yield PositionFix objects from a track CSV in file order.

    Columns used: geoTime (epoch ms), latitude, longitude and, if present,
    horizontalAccuracy (meters). Broken rows are skipped.

    Raises:
        KeyError: If a required column is missing.
    """

    p = Path(csv_path)
    with p.open("r", encoding="utf-8", newline="") as f:
        reader = csv.DictReader(f)
        if reader.fieldnames is None:
            return

        for row in reader:
            try:
                yield _row_to_fix(row)
            except KeyError as exc:
                raise KeyError(f"CSV缺少必要字段：{exc}. 实际字段：{reader.fieldnames}") from exc
            except (ValueError, TypeError, AttributeError):
                continue


def load_position_fixes(csv_path: str | Path) -> tuple[list[PositionFix], CsvSummary]:
    """Load all fixes, sorted by timestamp.

    Returns:
        (fixes, summary)
    """

    p = Path(csv_path)
    rows_total = 0
    parsed: list[PositionFix] = []
    fieldnames: Sequence[str] = ()

    with p.open("r", encoding="utf-8", newline="") as f:
        reader = csv.DictReader(f)
        fieldnames = reader.fieldnames or ()
        for row in reader:
            rows_total += 1
            try:
                parsed.append(_row_to_fix(row))
            except (KeyError, ValueError, TypeError, AttributeError):
                continue

    parsed.sort(key=lambda fx: fx.timestamp_ms)
    summary = CsvSummary(
        rows_total=rows_total,
        rows_parsed=len(parsed),
        rows_skipped=rows_total - len(parsed),
        fieldnames=fieldnames,
    )
    if summary.rows_skipped > 0:
        logger.warning("CSV中有 %s 行解析失败已跳过", summary.rows_skipped)
    return parsed, summary


def write_position_fixes(fixes: Sequence[PositionFix], out_path: str | Path) -> None:
    p = Path(out_path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with p.open("w", encoding="utf-8", newline="") as f:
        w = csv.DictWriter(f, fieldnames=["geoTime", "latitude", "longitude", "horizontalAccuracy"])
        w.writeheader()
        for fx in fixes:
            w.writerow(
                {
                    "geoTime": fx.timestamp_ms,
                    "latitude": f"{fx.coordinate.lat:.7f}",
                    "longitude": f"{fx.coordinate.lng:.7f}",
                    "horizontalAccuracy": "" if fx.accuracy_m is None else f"{fx.accuracy_m:.1f}",
                }
            )
