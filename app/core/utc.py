"""
UTC DateTime Utilities for CaseCompass.

All datetimes are stored and handled in UTC with timezone awareness.
"""

from datetime import date, datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """
    Get current UTC time as timezone-aware datetime.

    Use this for database timestamps (DateTime(timezone=True) columns),
    API responses and comparisons.
    """
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    """Current UTC time as ISO 8601 string with Z suffix."""
    return utc_now().isoformat().replace("+00:00", "Z")


def to_utc(dt: datetime) -> datetime:
    """
    Convert a datetime to UTC timezone-aware datetime.

    - If naive: assumes UTC and adds timezone
    - If aware: converts to UTC
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_iso(iso_string: str) -> datetime:
    """
    Parse ISO 8601 datetime string to timezone-aware UTC datetime.

    Handles "2025-12-08T03:00:00Z", "+00:00" offsets and naive strings (assumed UTC).
    """
    cleaned = iso_string.replace("Z", "+00:00")
    try:
        dt = datetime.fromisoformat(cleaned)
    except ValueError:
        dt = datetime.fromisoformat(iso_string)
    return to_utc(dt)


def parse_event_date(value: Optional[str]) -> Optional[date]:
    """
    Parse a YYYY-MM-DD calendar date as returned by extraction models.
    Returns None for anything that is not a real calendar date.
    """
    if not value or not isinstance(value, str):
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None
