"""
Gap-aware active time and local-day mapping.

Timestamps in transcripts are UTC. Work days are attributed in a configured
IANA timezone, so a 23:30 local event is never booked to the next UTC day.
Active time only sums the gaps between consecutive events that are shorter
than the idle threshold; a long pause ends an active stretch.
"""

from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

DEFAULT_TIMEZONE = "America/New_York"
IDLE_GAP_MINUTES = 15

# Share of wall-clock time credited as active when no per-event data exists.
FALLBACK_ACTIVE_RATIO = 0.6


def parse_timestamp(value) -> datetime | None:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Returns None for anything that is not a parseable string.
    """
    if not isinstance(value, str) or not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def local_date(ts: datetime, tz: ZoneInfo) -> str:
    """Return the YYYY-MM-DD calendar date of *ts* in *tz*."""
    return ts.astimezone(tz).date().isoformat()


def _round_minutes(seconds: float) -> int:
    """Round seconds to whole minutes, halves rounding up."""
    return int(seconds / 60 + 0.5)


def wall_clock_minutes(first: datetime, last: datetime) -> int:
    """Whole minutes between the first and last event."""
    return _round_minutes(max((last - first).total_seconds(), 0))


def active_minutes(
    timestamps: list[datetime], idle_gap_minutes: int = IDLE_GAP_MINUTES
) -> int:
    """Sum of the gaps between consecutive events that are below the idle threshold.

    Events at minutes 0, 5 and 25 with a 15 minute threshold give 5: the
    0→5 gap counts, the 5→25 gap is idle.
    """
    if len(timestamps) < 2:
        return 0
    ordered = sorted(timestamps)
    threshold = idle_gap_minutes * 60
    total = 0.0
    for prev, cur in zip(ordered, ordered[1:]):
        gap = (cur - prev).total_seconds()
        if gap < threshold:
            total += gap
    return _round_minutes(total)


def fallback_active_minutes(
    wall_minutes: float, ratio: float = FALLBACK_ACTIVE_RATIO
) -> int:
    """Estimate active minutes from wall-clock minutes when no events are known."""
    return int(max(wall_minutes, 0) * ratio + 0.5)
