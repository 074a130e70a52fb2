import struct
from datetime import datetime, timedelta, timezone

import pytest

from chronos.utils.time_utils import (
    MAX_FILETIME, UtcTimestamp, datetime_to_filetime, filetime_to_utc, format_timestamp,
    parse_filetime_bytes, systemtime_to_datetime, validate_timezone
)

# 2024-03-01 09:15:00.1234567 UTC
SAMPLE_FILETIME = 133537581001234567


def test_filetime_keeps_sub_microsecond_ticks():
    """The seventh fractional digit survives conversion and formatting"""
    ts = filetime_to_utc(SAMPLE_FILETIME)
    assert ts.datetime == datetime(2024, 3, 1, 9, 15, 0, 123456, tzinfo=timezone.utc)
    assert ts.remainder == 7
    assert ts.isoformat() == '2024-03-01T09:15:00.1234567Z'
    assert ts.to_filetime() == SAMPLE_FILETIME


def test_filetime_epoch_and_unix_epoch():
    assert filetime_to_utc(1).isoformat() == '1601-01-01T00:00:00.0000001Z'
    unix_epoch = datetime(1970, 1, 1, tzinfo=timezone.utc)
    assert datetime_to_filetime(unix_epoch) == 116444736000000000
    assert datetime_to_filetime(unix_epoch.replace(tzinfo=None)) == 116444736000000000


@pytest.mark.parametrize('value', [0, -5, MAX_FILETIME + 1])
def test_invalid_filetime_rejected(value):
    with pytest.raises(ValueError):
        filetime_to_utc(value)


def test_parse_filetime_bytes_treats_unset_values_as_missing():
    assert parse_filetime_bytes(bytes(8)) is None
    assert parse_filetime_bytes(struct.pack('<Q', 0x7FFFFFFFFFFFFFFF)) is None
    assert parse_filetime_bytes(b'\x01\x02') is None
    data = b'\xAA' * 4 + struct.pack('<Q', SAMPLE_FILETIME)
    assert parse_filetime_bytes(data, 4).to_filetime() == SAMPLE_FILETIME


def test_timestamps_order_by_instant_then_remainder():
    base = datetime(2024, 3, 1, tzinfo=timezone.utc)
    earlier = UtcTimestamp(base, 3)
    later = UtcTimestamp(base, 4)
    assert earlier < later
    assert UtcTimestamp(base + timedelta(microseconds=1), 0) > later


def test_timestamp_requires_aware_datetime_and_normalises_offset():
    with pytest.raises(ValueError):
        UtcTimestamp(datetime(2024, 1, 1))
    with pytest.raises(ValueError):
        UtcTimestamp(datetime(2024, 1, 1, tzinfo=timezone.utc), 10)

    plus_two = timezone(timedelta(hours=2))
    ts = UtcTimestamp(datetime(2024, 1, 1, 2, 0, tzinfo=plus_two))
    assert ts.isoformat() == '2024-01-01T00:00:00.0000000Z'


def test_format_timestamp_in_named_zone():
    ts = filetime_to_utc(SAMPLE_FILETIME)
    assert format_timestamp(ts) == ts.isoformat()
    assert format_timestamp(ts, 'Europe/Berlin') == '2024-03-01 10:15:00 CET (UTC+01:00)'
    assert format_timestamp(None) == ''


def test_validate_timezone():
    assert validate_timezone('Africa/Cairo') == 'Africa/Cairo'
    with pytest.raises(ValueError):
        validate_timezone('Mars/Olympus_Mons')


def test_systemtime_conversion():
    raw = struct.pack('<8H', 2023, 12, 0, 31, 23, 59, 58, 250)
    assert systemtime_to_datetime(raw) == datetime(2023, 12, 31, 23, 59, 58, 250000, tzinfo=timezone.utc)
    with pytest.raises(ValueError):
        systemtime_to_datetime(raw[:8])
