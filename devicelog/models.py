from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Dict, Optional


TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"


class LogLevel(IntEnum):
    VERBOSE = 2
    DEBUG = 3
    INFO = 4
    WARN = 5
    ERROR = 6
    ASSERT = 7

    @property
    def stored_name(self) -> str:
        return self.name

    @property
    def logging_level(self) -> int:
        return _LOGGING_LEVELS[self]

    @classmethod
    def parse(cls, value: Any) -> LogLevel:
        """Accept a LogLevel, its int value, or a name (``warn``, ``WARNING``, ``e``...)."""

        if isinstance(value, LogLevel):
            return value
        if isinstance(value, bool):
            raise ValueError(f"invalid log level: {value!r}")
        if isinstance(value, int):
            return cls(value)
        if isinstance(value, str):
            key = value.strip().upper()
            if key in cls.__members__:
                return cls[key]
            alias = _ALIASES.get(key)
            if alias is not None:
                return alias
            if key.isdigit():
                return cls(int(key))
        raise ValueError(f"invalid log level: {value!r}")


_LOGGING_LEVELS = {
    LogLevel.VERBOSE: 5,
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
    LogLevel.ASSERT: logging.CRITICAL,
}

logging.addLevelName(_LOGGING_LEVELS[LogLevel.VERBOSE], "VERBOSE")

_ALIASES = {
    "V": LogLevel.VERBOSE,
    "D": LogLevel.DEBUG,
    "I": LogLevel.INFO,
    "W": LogLevel.WARN,
    "WARNING": LogLevel.WARN,
    "E": LogLevel.ERROR,
    "A": LogLevel.ASSERT,
    "CRITICAL": LogLevel.ASSERT,
}


def format_timestamp(dt: datetime) -> str:
    """Render ``dt`` as a fixed-width UTC string with millisecond precision.

    The format sorts lexicographically in time order, which the store relies on
    for age-based purging.
    """

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return f"{dt.strftime(TIMESTAMP_FORMAT)}.{dt.microsecond // 1000:03d}Z"


def utcnow_timestamp() -> str:
    return format_timestamp(datetime.now(timezone.utc))


@dataclass(frozen=True)
class LogRecord:
    level_name: str
    tag: str
    message: str
    timestamp: str
    id: Optional[int] = None

    @classmethod
    def create(cls, level: LogLevel, tag: str, message: str, *, timestamp: str | None = None) -> LogRecord:
        return cls(
            level_name=level.stored_name,
            tag=tag or "",
            message=message or "",
            timestamp=timestamp or utcnow_timestamp(),
        )

    def with_id(self, record_id: int) -> LogRecord:
        return replace(self, id=int(record_id))

    def as_fields(self) -> Dict[str, str]:
        return {
            "log_level": self.level_name,
            "tag": self.tag,
            "message": self.message,
            "timestamp": self.timestamp,
        }
