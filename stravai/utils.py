"""General utility helpers shared across modules."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Callable, Optional

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""

    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_iso_datetime(value: Any) -> Optional[datetime]:
    """Parse Strava ISO-8601 timestamps (``2025-01-05T10:00:00Z``) to UTC."""

    if isinstance(value, datetime):
        return to_utc(value)
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return to_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def parse_date(value: str | date) -> date:
    """Parse a ``YYYY-MM-DD`` string (or accept a date) into a ``date``."""

    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.strptime(value.strip()[:10], "%Y-%m-%d").date()


def mask_tail(value: str | None, visible: int = 4) -> str:
    """Return ``value`` masked down to its trailing ``visible`` characters."""

    if not value:
        return ""
    tail = value[-visible:]
    return f"****{tail}" if len(value) > visible else "****" + tail


def format_pace(moving_time_seconds: float, distance_meters: float) -> str:
    """Format pace as ``M:SS`` per kilometre, or ``?`` for zero distance."""

    if distance_meters <= 0 or moving_time_seconds <= 0:
        return "?"
    seconds_per_km = moving_time_seconds / (distance_meters / 1000.0)
    mins, sec = divmod(int(round(seconds_per_km)), 60)
    return f"{mins}:{sec:02d}"
