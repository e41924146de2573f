"""Timestamp utilities for TaskHub.

All timestamps stored or exchanged by TaskHub are UTC strings of a fixed
width ("2024-05-01T12:00:00.000000Z"), so comparing them as strings gives
the same answer as comparing the instants they describe.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def to_timestamp(dt: datetime) -> str:
    """Format a datetime as a canonical UTC timestamp string.

    Naive datetimes are assumed to already be in UTC.
    """
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 string into an aware UTC datetime.

    Accepts the canonical form as well as looser ISO variants such as
    "2024-05-01", "2024-05-01T12:00:00+02:00" or a trailing "Z".

    Raises:
        ValueError: If the string is not a recognisable ISO-8601 value
    """
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def normalize_timestamp(value: Optional[str]) -> Optional[str]:
    """Normalise any ISO-8601 string to the canonical form (None passes through)."""
    if value is None or value == "":
        return None
    return to_timestamp(parse_timestamp(value))


def utc_now() -> str:
    """Get the current time as a canonical timestamp string."""
    return to_timestamp(datetime.now(timezone.utc))


def timestamp_days_ago(days: float) -> str:
    """Get the canonical timestamp for a point ``days`` before now."""
    return to_timestamp(datetime.now(timezone.utc) - timedelta(days=days))


def timestamp_days_ahead(days: float) -> str:
    """Get the canonical timestamp for a point ``days`` after now."""
    return to_timestamp(datetime.now(timezone.utc) + timedelta(days=days))


def format_timestamp(ts: Optional[str]) -> str:
    """Format a stored timestamp in local time for display.

    Args:
        ts: Canonical timestamp string or None

    Returns:
        "YYYY-MM-DD HH:MM:SS" in the local timezone, or empty string if ts is None
    """
    if not ts:
        return ""
    return parse_timestamp(ts).astimezone().strftime("%Y-%m-%d %H:%M:%S")
