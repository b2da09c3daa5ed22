"""
Numeric Log Levels.

phrase-tts uses four verbosity levels instead of Python's five severities:

    1 = MINIMAL  - Startup, shutdown, errors
    2 = NORMAL   - Request lifecycle, cache hits/misses, evictions (default)
    3 = VERBOSE  - Per-stage timing, rate limiter decisions
    4 = DEBUG    - Index internals, manager messages

Each level maps onto a stdlib level so handlers can filter as usual:
    MINIMAL -> WARNING, NORMAL -> INFO, VERBOSE -> DEBUG, DEBUG -> DEBUG - 5
"""
from __future__ import annotations

import logging
from enum import IntEnum
from typing import Any


class LogLevel(IntEnum):
    """Verbosity levels, ordered from quietest to loudest."""
    MINIMAL = 1
    NORMAL = 2
    VERBOSE = 3
    DEBUG = 4


LEVEL_MAP = {
    LogLevel.MINIMAL: logging.WARNING,
    LogLevel.NORMAL: logging.INFO,
    LogLevel.VERBOSE: logging.DEBUG,
    LogLevel.DEBUG: logging.DEBUG - 5,
}

LEVEL_NAMES = {level.value: level.name for level in LogLevel}

_NAME_ALIASES = {
    "TRACE": LogLevel.DEBUG,
    "CRITICAL": LogLevel.MINIMAL,
    "ERROR": LogLevel.MINIMAL,
    "WARNING": LogLevel.MINIMAL,
    "WARN": LogLevel.MINIMAL,
    "INFO": LogLevel.NORMAL,
}


def coerce_level(value: Any) -> LogLevel:
    """
    Convert a config or environment value to a LogLevel.

    Accepts a LogLevel, an int 1-4, a stdlib level number (e.g. 20), a
    level name ("VERBOSE", "INFO", ...) or a numeric string ("3").
    Anything unrecognised falls back to NORMAL.

    Examples:
        >>> coerce_level("3")
        <LogLevel.VERBOSE: 3>
        >>> coerce_level(logging.WARNING)
        <LogLevel.MINIMAL: 1>
    """
    if isinstance(value, LogLevel):
        return value

    if isinstance(value, int):
        if 1 <= value <= 4:
            return LogLevel(value)
        if value >= logging.WARNING:
            return LogLevel.MINIMAL
        if value >= logging.INFO:
            return LogLevel.NORMAL
        return LogLevel.DEBUG

    if isinstance(value, str):
        name = value.strip().upper()
        if name.isdigit():
            return coerce_level(int(name))
        if name in LogLevel.__members__:
            return LogLevel[name]
        return _NAME_ALIASES.get(name, LogLevel.NORMAL)

    return LogLevel.NORMAL
