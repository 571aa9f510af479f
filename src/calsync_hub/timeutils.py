"""Timezone and epoch helpers shared by the adapters and models."""

import time
from datetime import date, datetime
from typing import Any, Optional, Union

import pytz
from dateutil.parser import isoparse


def now_epoch_ms() -> int:
    """Current instant as epoch milliseconds."""
    return int(time.time() * 1000)


def ensure_utc(dt: datetime) -> datetime:
    """Return ``dt`` converted to UTC, treating naive datetimes as UTC.

    Args:
        dt: Datetime that may be timezone-naive or timezone-aware

    Returns:
        Timezone-aware datetime in UTC
    """
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt.astimezone(pytz.UTC)


def to_epoch_ms(dt: datetime) -> int:
    return int(ensure_utc(dt).timestamp() * 1000)


def parse_datetime(value: Union[str, datetime, date], tz_name: Optional[str] = None) -> datetime:
    """Parse a provider time value into a UTC datetime.

    Accepts ISO-8601 strings (with ``Z``, offsets, or more than six
    fractional digits as Microsoft Graph emits), iCalendar basic format
    (``20240101T100000Z``, ``20240101``) and date-only values.

    Args:
        value: Raw value from the provider payload
        tz_name: IANA zone used to localize naive values (defaults to UTC)

    Returns:
        Timezone-aware UTC datetime

    Raises:
        ValueError: If the value cannot be parsed or the zone is unknown
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and value.strip():
        dt = isoparse(value.strip())
    else:
        raise ValueError(f"Unsupported datetime value: {value!r}")

    if dt.tzinfo is None and tz_name and tz_name.upper() != 'UTC':
        try:
            dt = pytz.timezone(tz_name).localize(dt)
        except pytz.UnknownTimeZoneError:
            raise ValueError(f"Unknown time zone: {tz_name}")
    return ensure_utc(dt)


def parse_epoch_ms(value: Any) -> int:
    """Normalize a provider "last modified" value to epoch milliseconds."""
    if isinstance(value, bool):
        raise ValueError(f"Unsupported timestamp value: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)
    return to_epoch_ms(parse_datetime(value))


def format_iso(dt: datetime) -> str:
    """Format as ISO-8601 UTC with a ``Z`` suffix."""
    return ensure_utc(dt).isoformat().replace('+00:00', 'Z')
