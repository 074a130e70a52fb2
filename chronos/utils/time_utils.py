"""
Time format conversion utilities for forensic analysis.

Every on-disk timestamp Chronos reads is a Windows FILETIME: a 64-bit
little-endian count of 100-nanosecond intervals since 1601-01-01 UTC.
``datetime`` only resolves microseconds, so ``UtcTimestamp`` carries the
remaining 0-9 ticks alongside it and the conversion stays lossless.
"""

import datetime
import struct
from dataclasses import dataclass
from typing import Optional

import pytz

# Windows FILETIME epoch (January 1, 1601)
WINDOWS_EPOCH = datetime.datetime(1601, 1, 1, 0, 0, 0, tzinfo=datetime.timezone.utc)

# Constants for time conversions
TICKS_PER_MICROSECOND = 10

# Largest FILETIME that still fits in a datetime (9999-12-31 23:59:59.9999999)
MAX_FILETIME = (
    (datetime.datetime(9999, 12, 31, 23, 59, 59, 999999, tzinfo=datetime.timezone.utc)
     - WINDOWS_EPOCH) // datetime.timedelta(microseconds=1)
) * TICKS_PER_MICROSECOND + (TICKS_PER_MICROSECOND - 1)


@dataclass(frozen=True, order=True)
class UtcTimestamp:
    """
    A UTC instant with full FILETIME precision.

    Attributes:
        datetime: Timezone-aware UTC datetime, truncated to the microsecond
        remainder: Leftover 100ns ticks below the microsecond (0-9)
    """
    datetime: datetime.datetime
    remainder: int = 0

    def __post_init__(self):
        if self.datetime.tzinfo is None:
            raise ValueError("UtcTimestamp requires a timezone-aware datetime")
        if self.datetime.utcoffset() != datetime.timedelta(0):
            object.__setattr__(self, 'datetime', self.datetime.astimezone(datetime.timezone.utc))
        if not 0 <= self.remainder < TICKS_PER_MICROSECOND:
            raise ValueError(f"Sub-microsecond remainder out of range: {self.remainder}")

    def to_filetime(self) -> int:
        """Return the exact FILETIME this timestamp represents."""
        return datetime_to_filetime(self.datetime) + self.remainder

    def isoformat(self) -> str:
        """ISO 8601 with seven fractional digits and a ``Z`` suffix."""
        fraction = self.datetime.microsecond * TICKS_PER_MICROSECOND + self.remainder
        return f"{self.datetime.strftime('%Y-%m-%dT%H:%M:%S')}.{fraction:07d}Z"

    def __str__(self) -> str:
        return self.isoformat()


def filetime_to_utc(filetime: int) -> UtcTimestamp:
    """
    Convert Windows FILETIME (64-bit) to a lossless UTC timestamp.

    Args:
        filetime: 100-nanosecond intervals since 1601-01-01

    Returns:
        UtcTimestamp: UTC instant

    Raises:
        ValueError: If the value is zero, negative or beyond year 9999
    """
    if not filetime or filetime < 0:
        raise ValueError(f"Invalid FILETIME value: {filetime}")
    if filetime > MAX_FILETIME:
        raise ValueError(f"FILETIME out of range: {filetime}")

    microseconds, remainder = divmod(filetime, TICKS_PER_MICROSECOND)
    dt = WINDOWS_EPOCH + datetime.timedelta(microseconds=microseconds)
    return UtcTimestamp(dt, remainder)


def datetime_to_filetime(dt: datetime.datetime) -> int:
    """
    Convert UTC datetime to Windows FILETIME (64-bit).

    Args:
        dt: datetime object (naive values are taken as UTC)

    Returns:
        int: Windows FILETIME as 64-bit integer
    """
    if not dt.tzinfo:
        dt = dt.replace(tzinfo=datetime.timezone.utc)

    # Integer arithmetic only; total_seconds() would round through a float
    delta = dt - WINDOWS_EPOCH
    return delta // datetime.timedelta(microseconds=1) * TICKS_PER_MICROSECOND


def parse_filetime_bytes(data: bytes, offset: int = 0) -> Optional[UtcTimestamp]:
    """
    Decode an 8-byte little-endian FILETIME at ``offset``.

    Returns None for zero, unset (0x7FFF...) or out-of-range values, which is
    how Windows marks a timestamp that was never written.
    """
    if offset < 0 or offset + 8 > len(data):
        return None
    value = struct.unpack_from('<Q', data, offset)[0]
    try:
        return filetime_to_utc(value)
    except ValueError:
        return None


def systemtime_to_datetime(systemtime: bytes) -> datetime.datetime:
    """
    Convert Windows SYSTEMTIME structure to UTC datetime.

    Args:
        systemtime: 16-byte SYSTEMTIME structure

    Returns:
        datetime: UTC datetime object
    """
    if len(systemtime) != 16:
        raise ValueError("SYSTEMTIME must be 16 bytes")

    year, month, _day_of_week, day, hour, minute, second, milliseconds = \
        struct.unpack('<HHHHHHHH', systemtime)

    return datetime.datetime(
        year, month, day, hour, minute, second,
        milliseconds * 1000,
        tzinfo=datetime.timezone.utc
    )


def format_timestamp(timestamp: UtcTimestamp, timezone: str = 'UTC') -> str:
    """
    Format a timestamp for display in the given timezone.

    UTC keeps the full seven-digit fraction. Other zones are rendered as
    'YYYY-MM-DD HH:MM:SS ABBR (UTC+HH:MM)'.

    Args:
        timestamp: UtcTimestamp to format
        timezone: Any name from pytz.all_timezones

    Example:
        >>> format_timestamp(ts, 'Africa/Cairo')
        '2025-09-15 03:26:33 EEST (UTC+03:00)'
    """
    if timestamp is None:
        return ""
    if timezone.upper() == 'UTC':
        return timestamp.isoformat()

    target_tz = pytz.timezone(timezone)
    localized_dt = timestamp.datetime.astimezone(target_tz)

    tz_abbr = localized_dt.strftime('%Z')
    tz_offset = localized_dt.strftime('%z')
    if tz_offset:
        tz_offset = f"{tz_offset[:3]}:{tz_offset[3:]}"

    return f"{localized_dt.strftime('%Y-%m-%d %H:%M:%S')} {tz_abbr} (UTC{tz_offset})"


def validate_timezone(timezone: str) -> str:
    """Return ``timezone`` if pytz knows it, else raise ValueError."""
    try:
        pytz.timezone(timezone)
    except pytz.UnknownTimeZoneError:
        raise ValueError(f"Unknown timezone: {timezone}")
    return timezone


def get_current_utc() -> datetime.datetime:
    """Get current time in UTC."""
    return datetime.datetime.now(datetime.timezone.utc)
