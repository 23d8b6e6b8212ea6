"""
UTC timestamp helpers.

The canonical store keeps naive UTC datetimes everywhere; upstream payloads
carry ISO 8601 strings with a ``Z`` suffix.
"""

from datetime import datetime, timezone
from typing import Any, Optional

EPOCH = datetime(1970, 1, 1)


def utcnow() -> datetime:
    """Current time as a naive UTC datetime"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an upstream timestamp into a naive UTC datetime (None if unparseable)"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def to_odata(dt: datetime) -> str:
    """Format a naive UTC datetime as an OData filter literal"""
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"
