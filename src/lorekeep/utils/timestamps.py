"""
Timestamp helpers.

The store keeps naive UTC datetimes everywhere. Incoming values may be
aware (web payloads, ISO strings with offsets) and are converted here.
"""

from datetime import datetime, timezone
from typing import Optional

from dateutil import parser as date_parser

ORDERING_KEY_FORMAT = "%Y%m%dT%H%M%S.%fZ"


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_timestamp(value: str | int | float | None) -> Optional[datetime]:
    """
    Parse an ISO 8601 string or epoch seconds into naive UTC.

    Returns None for empty input.

    Raises:
        ValueError: If the value cannot be parsed
    """
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
    try:
        return to_utc_naive(date_parser.isoparse(value))
    except (ValueError, TypeError) as e:
        raise ValueError(f"Invalid timestamp format: {value}") from e


def make_ordering_key(timestamp: datetime, sequence: int) -> str:
    """
    Build a message ordering key.

    Keys compare lexicographically in (timestamp, sequence) order, so they
    can be stored as plain strings and sorted by the database.
    """
    return f"{to_utc_naive(timestamp).strftime(ORDERING_KEY_FORMAT)}:{sequence:08d}"
