"""Timestamp helpers shared by the event store, synchronizer and pool."""
from datetime import datetime, timezone
from typing import Optional


# Upstream formats seen in the police feed besides plain ISO 8601
DATETIME_FORMATS = [
    '%Y-%m-%d %H:%M:%S %z',   # 2024-06-01 10:00:00 +02:00
    '%Y-%m-%d %H:%M:%S%z',
    '%Y-%m-%d %H:%M:%S',
    '%Y-%m-%d',
]


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> Optional[datetime]:
    """
    Parse an ISO 8601 (or police feed style) timestamp.

    Naive values are treated as UTC.

    Args:
        value: Timestamp string

    Returns:
        Aware datetime or None if the value cannot be parsed
    """
    if not isinstance(value, str) or not value.strip():
        return None

    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'

    parsed = None
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        for fmt in DATETIME_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue

    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_iso(moment: datetime) -> str:
    """Format a datetime as a UTC ISO string with millisecond precision."""
    moment = moment.astimezone(timezone.utc)
    return moment.strftime('%Y-%m-%dT%H:%M:%S.') + f"{moment.microsecond // 1000:03d}Z"


def to_date(moment: datetime) -> str:
    """Format a datetime as its UTC calendar date (YYYY-MM-DD)."""
    return moment.astimezone(timezone.utc).strftime('%Y-%m-%d')
