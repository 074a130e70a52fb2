"""
Error Handler Utility
=====================

Exception taxonomy and logging setup shared by every Chronos component.

Errors are graded by how far they are allowed to travel:

- ``IoError``: the image itself cannot be opened or read. Fatal to the run.
- ``FormatError``: a container or artifact header is not what it claims to be.
  Fatal to that one artifact's parser, never to its siblings.
- ``RecordError``: a single record inside an artifact is broken. The record is
  skipped and counted.
- ``BoundsError``: a length or offset parsed from the data points outside the
  bytes available. Always handled as a ``RecordError``.

Author: Chronos Development
Version: 1.0
"""

import logging
import sys
from typing import Optional


class ChronosError(Exception):
    """Base exception for Chronos errors"""
    pass


class IoError(ChronosError):
    """Raised when the image path cannot be opened or a read fails"""
    pass


class OutOfBoundsError(IoError):
    """Raised when a read would extend past the end of a volume or range"""

    def __init__(self, offset: int, length: int, size: int):
        super().__init__(
            f"Read of {length} bytes at offset {offset} exceeds size {size}"
        )
        self.offset = offset
        self.length = length
        self.size = size


class FormatError(ChronosError):
    """Raised when a container or artifact signature/header does not match"""
    pass


class DecompressionError(FormatError):
    """Raised when a compressed artifact body cannot be decompressed"""
    pass


class RecordError(ChronosError):
    """Raised when a single record fails validation, fixup or decoding"""
    pass


class BoundsError(RecordError):
    """Raised when a parsed length or offset points outside the available bytes"""
    pass


class ErrorHandler:
    """
    Centralized logging configuration and error reporting.

    One instance is created by the command line entry point. Library code only
    uses module-level loggers and never configures handlers itself.
    """

    LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

    def __init__(self, logger_name: str = 'chronos'):
        """
        Initialize the error handler with a logger.

        Args:
            logger_name: Name of the package logger to configure
        """
        self.logger = logging.getLogger(logger_name)

    def setup_logging(self, log_level: int = logging.INFO, log_file: Optional[str] = None):
        """
        Configure logging settings.

        Args:
            log_level: Logging level (e.g., logging.INFO, logging.DEBUG)
            log_file: Optional file to write logs to
        """
        # Clear any existing handlers
        self.logger.handlers = []
        self.logger.setLevel(log_level)
        self.logger.propagate = False

        formatter = logging.Formatter(self.LOG_FORMAT, datefmt=self.DATE_FORMAT)

        # Console goes to stderr so the report path printed on stdout stays clean
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(log_level)
        console_handler.setFormatter(formatter)
        self.logger.addHandler(console_handler)

        if log_file:
            try:
                file_handler = logging.FileHandler(log_file, encoding='utf-8')
            except OSError as e:
                self.logger.error(f"Failed to set up file logging: {e}")
            else:
                # The file always receives per-record diagnostics
                file_handler.setLevel(logging.DEBUG)
                file_handler.setFormatter(formatter)
                self.logger.addHandler(file_handler)
                self.logger.setLevel(min(log_level, logging.DEBUG))

    def handle_error(self,
                     exception: Optional[BaseException] = None,
                     message: str = "An error occurred",
                     log_level: int = logging.ERROR) -> str:
        """
        Log an error as a single line and return that line.

        Args:
            exception: The exception that was caught (if any)
            message: Custom error message
            log_level: Logging level for the error

        Returns:
            str: The formatted one-line cause
        """
        full_message = message
        if exception is not None:
            full_message = f"{message}: {exception}"

        self.logger.log(log_level, full_message, exc_info=self.logger.isEnabledFor(logging.DEBUG))
        return full_message
