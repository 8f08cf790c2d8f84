"""Datetime utilities with consistent UTC timezone handling.

Notes carry their modification time in whatever shape the local store
produced it: epoch milliseconds, an ISO-8601 string, or a numeric string.
Remote backends report HTTP dates (WebDAV) or RFC 3339 strings (Drive).
Everything is normalized here to timezone-aware UTC datetimes.
"""

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional


def now_utc() -> datetime:
    """Return current datetime in UTC timezone."""
    return datetime.now(timezone.utc)


def ensure_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure datetime is timezone-aware, assuming UTC if naive.

    Args:
        dt: Datetime to check/convert, or None

    Returns:
        Timezone-aware datetime in UTC, or None if input was None
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(timezone.utc)


def from_epoch_ms(value: int) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime."""
    return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)


def to_epoch_ms(dt: Optional[datetime]) -> Optional[int]:
    """Convert a datetime to epoch milliseconds, or None."""
    if dt is None:
        return None
    return int(ensure_aware(dt).timestamp() * 1000)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a note timestamp from the formats the local store emits.

    Accepts datetimes, epoch milliseconds (int or float), ISO-8601 strings
    (including a trailing ``Z``) and numeric strings holding epoch
    milliseconds.

    Args:
        value: Raw timestamp value

    Returns:
        Aware UTC datetime, or None when the value is missing or unparseable
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        return ensure_aware(value)

    if isinstance(value, (int, float)):
        try:
            return from_epoch_ms(int(value))
        except (OverflowError, OSError, ValueError):
            return None

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.lstrip("-").isdigit():
            try:
                return from_epoch_ms(int(text))
            except (OverflowError, OSError, ValueError):
                return None
        try:
            return ensure_aware(datetime.fromisoformat(text.replace("Z", "+00:00")))
        except ValueError:
            return None

    return None


def parse_http_date(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 1123 HTTP date such as WebDAV ``getlastmodified``."""
    if not value:
        return None
    try:
        return ensure_aware(parsedate_to_datetime(value.strip()))
    except (TypeError, ValueError, IndexError):
        # Some servers report ISO dates instead
        return parse_timestamp(value)


def to_iso_string(dt: Optional[datetime]) -> Optional[str]:
    """Convert datetime to ISO string with timezone info."""
    if dt is None:
        return None

    return ensure_aware(dt).isoformat()


def to_rfc3339(dt: datetime) -> str:
    """Format a datetime the way the Drive API expects (``Z`` suffix, ms)."""
    aware = ensure_aware(dt)
    return aware.strftime("%Y-%m-%dT%H:%M:%S.") + f"{aware.microsecond // 1000:03d}Z"


def truncate_to_seconds(dt: Optional[datetime]) -> Optional[datetime]:
    """Drop sub-second precision for cross-backend comparisons."""
    if dt is None:
        return None
    return ensure_aware(dt).replace(microsecond=0)
