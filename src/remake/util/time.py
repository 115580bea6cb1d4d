from __future__ import annotations

from datetime import datetime


def now_iso() -> str:
    """Return timezone-aware current local time in ISO format."""
    return datetime.now().astimezone().isoformat(timespec="seconds")


def now_iso_precise() -> str:
    """Same as now_iso with microseconds, for cache entry ordering."""
    return datetime.now().astimezone().isoformat(timespec="microseconds")


def duration_sec(start: datetime, end: datetime) -> float:
    """Calculate elapsed seconds."""
    return round((end - start).total_seconds(), 3)
