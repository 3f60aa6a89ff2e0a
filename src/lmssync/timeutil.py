"""UTC helpers. All datetimes stored locally are naive UTC."""
from datetime import datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_api_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp from the LMS API into naive UTC.

    Accepts a trailing "Z" or an explicit offset. Returns None for empty or
    unparseable input.
    """
    if not value or not isinstance(value, str):
        return None
    try:
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def format_api_datetime(dt: datetime) -> str:
    """Format a naive-UTC (or aware) datetime as "YYYY-MM-DDTHH:MM:SSZ"."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.replace(microsecond=0).isoformat() + "Z"
