"""
Chronos Configuration
Run-time settings for a timeline build, loadable from a JSON file and
overridable from the command line.
"""

import json
import logging
import os
from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import Any, Dict, Optional

from chronos.utils.error_handler import ChronosError
from chronos.utils.time_utils import validate_timezone

logger = logging.getLogger(__name__)


class ConfigError(ChronosError):
    """Raised when a configuration file or value is invalid"""
    pass


class LogLevel(Enum):
    """Logging levels"""
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL

    @classmethod
    def from_name(cls, name: str) -> 'LogLevel':
        try:
            return cls[name.upper()]
        except KeyError:
            raise ConfigError(f"Unknown log level: {name}")


@dataclass
class ChronosConfig:
    """Configuration class for a Chronos run"""

    # Processing caps
    max_mft_records: int = 1000
    max_log_records: int = 100000
    max_prefetch_files: int = 1024
    max_artifact_bytes: int = 1024 * 1024 * 1024  # 1GB

    # Performance settings
    workers: int = 4

    # Output settings
    output_path: str = "timeline.html"
    sqlite_path: Optional[str] = None
    display_timezone: str = "UTC"

    # Logging settings
    log_level: LogLevel = LogLevel.INFO
    log_file: Optional[str] = None
    show_progress: bool = True

    def __post_init__(self):
        """Validate configuration after initialization"""
        if isinstance(self.log_level, str):
            self.log_level = LogLevel.from_name(self.log_level)

        for name in ('max_mft_records', 'max_log_records', 'max_prefetch_files', 'max_artifact_bytes'):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ConfigError(f"{name} must be a non-negative integer, got {value!r}")
        if not isinstance(self.workers, int) or isinstance(self.workers, bool) or self.workers <= 0:
            raise ConfigError(f"workers must be a positive integer, got {self.workers!r}")
        if not self.output_path:
            raise ConfigError("output_path cannot be empty")

        try:
            validate_timezone(self.display_timezone)
        except ValueError as e:
            raise ConfigError(str(e))

    @classmethod
    def load(cls, config_file: str) -> 'ChronosConfig':
        """
        Load a configuration from a JSON file.

        Every key must name a ChronosConfig field; anything else is rejected so
        that a misspelled cap cannot silently fall back to its default.

        Args:
            config_file: Path to a JSON object file

        Returns:
            ChronosConfig: Validated configuration

        Raises:
            ConfigError: If the file is unreadable, not a JSON object, or
                contains unknown keys or invalid values
        """
        if not os.path.isfile(config_file):
            raise ConfigError(f"Configuration file not found: {config_file}")

        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Error loading configuration {config_file}: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"Configuration {config_file} must contain a JSON object")

        logger.debug(f"Loaded configuration from {config_file}: {sorted(data)}")
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ChronosConfig':
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")
        try:
            return cls(**data)
        except TypeError as e:
            raise ConfigError(f"Invalid configuration: {e}")

    def with_overrides(self, **overrides) -> 'ChronosConfig':
        """Return a copy with every non-None override applied."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        if not changes:
            return self
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        result = {}
        for f in fields(self):
            value = getattr(self, f.name)
            result[f.name] = value.name if isinstance(value, LogLevel) else value
        return result
