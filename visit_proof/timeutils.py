"""Epoch-millisecond helpers: the wire format is always ms, people read local time."""

from __future__ import annotations

import time
from datetime import datetime, tzinfo
from functools import lru_cache

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def now_ms() -> int:
    return time.time_ns() // 1_000_000


@lru_cache(maxsize=32)
def zone(tz_name: str) -> tzinfo:
    """IANA zone by name.

    Raises:
        ValueError: Unknown or malformed zone name.
    """

    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"无效时区：{tz_name!r}。例如可用：Europe/Berlin") from exc


def parse_epoch_ms(text: str, tz_name: str) -> int:
    """Read a user-supplied instant as epoch milliseconds.

    Accepts raw epoch ms (all digits) or an ISO date-time such as
    "2025-06-01 09:30:00" / "2025-06-01T09:30:00+02:00". A date-time without
    an offset is local time in ``tz_name``.

    Raises:
        ValueError: If the text is neither.
    """

    s = text.strip()
    if s.isdigit():
        return int(s)
    try:
        dt = datetime.fromisoformat(s.replace("T", " "))
    except ValueError as exc:
        raise ValueError(f"无法解析时间：{text!r}。建议格式：2025-06-01 09:30:00 或毫秒时间戳") from exc
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=zone(tz_name))
    return int(dt.timestamp() * 1000)


def format_epoch_ms(epoch_ms: int, tz_name: str) -> str:
    """Local wall-clock time with offset; empty for unset (non-positive) values."""

    if epoch_ms <= 0:
        return ""
    return datetime.fromtimestamp(epoch_ms / 1000.0, tz=zone(tz_name)).isoformat(sep=" ", timespec="seconds")


def format_duration_ms(duration_ms: float) -> str:
    s = int(round(max(0.0, duration_ms) / 1000.0))
    return f"{s // 3600:02d}:{s % 3600 // 60:02d}:{s % 60:02d}"
