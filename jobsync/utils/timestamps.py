"""Timestamp parsing and comparison helpers.

Source timestamps arrive as strings with inconsistent precision and offset
formats (``2024-05-01T10:00:00.000+0000``, ``2024-05-01T10:00:00Z``, ...).
Everything is parsed into timezone-aware ``datetime`` objects before it is
compared.
"""

import re
from datetime import datetime, timezone
from typing import Any

# Salesforce emits "+0000" offsets, which fromisoformat only accepts on 3.11+.
_COMPACT_OFFSET = re.compile(r"([+-]\d{2})(\d{2})$")


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """
    Parse a timestamp into an aware UTC datetime.

    Args:
        value: ISO-8601 string, datetime, or None

    Returns:
        Parsed datetime, or None if the value is empty or unparseable
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        return ensure_utc(value)

    if not isinstance(value, str):
        return None

    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _COMPACT_OFFSET.sub(r"\1:\2", text)

    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def format_timestamp(value: datetime) -> str:
    """Format a datetime as an ISO-8601 UTC string with a Z suffix."""
    return ensure_utc(value).isoformat().replace("+00:00", "Z")

