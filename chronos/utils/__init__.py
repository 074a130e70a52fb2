"""
Utility functions and helpers for Chronos.
Includes the error taxonomy, logging setup, timestamp conversion and memory monitoring.
"""

from .error_handler import (
    ErrorHandler, ChronosError, IoError, OutOfBoundsError, FormatError,
    DecompressionError, RecordError, BoundsError
)
from .time_utils import UtcTimestamp, filetime_to_utc, format_timestamp

__all__ = [
    'ErrorHandler',
    'ChronosError',
    'IoError',
    'OutOfBoundsError',
    'FormatError',
    'DecompressionError',
    'RecordError',
    'BoundsError',
    'UtcTimestamp',
    'filetime_to_utc',
    'format_timestamp'
]
