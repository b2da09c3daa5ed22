"""
phrase-tts Structured Logging Module.

A thin layer over the standard library logging package that adds:
    - Numeric log levels (1-4) for simplified configuration
    - Colored console output for human readability
    - JSONL file output for machine parsing and analysis
    - Request ID and caller identity correlation via contextvars

Log Levels:
    1 = MINIMAL  - Startup, shutdown, critical errors only
    2 = NORMAL   - Request lifecycle, cache status, evictions (default)
    3 = VERBOSE  - Per-stage timing, limiter decisions
    4 = DEBUG    - Internal state, tracing

Configuration:
    export PHRASE_TTS_LOG_LEVEL=3  # VERBOSE
    export PHRASE_TTS_LOG_DIR=logs # also write logs/phrase-tts.jsonl
    export PHRASE_TTS_NO_COLOR=1   # plain console output

    In settings.yaml:
        logging:
          level: 2
          log_dir: logs
          jsonl_file: phrase-tts.jsonl

Usage:
    from phrase_tts.core.logging import get_logger, info, warn, verbose

    _LOG = get_logger("phrase-tts.mymodule")

    info(_LOG, "hit", key="5a2b91c0", bytes=3210)
    warn(_LOG, "evict_missing_file", key="5a2b91c0")
    verbose(_LOG, "stage", event="synth", seconds=0.812)

Module Structure:
    - levels.py: LogLevel enum and level mapping
    - context.py: Request ID, identity and configuration state
    - formatters.py: Colors, JsonlFormatter and ColoredConsoleFormatter
"""
from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

from . import formatters
from .context import (
    get_identity,
    get_level,
    get_level_name,
    get_log_config,
    get_request_id,
    is_configured,
    read_logging_config,
    set_configured,
    set_identity,
    set_level,
    set_log_config,
    set_request_id,
)
from .formatters import ColoredConsoleFormatter, Colors, JsonlFormatter, supports_color
from .levels import LEVEL_MAP, LEVEL_NAMES, LogLevel, coerce_level


# Root logger passes everything; handlers do the filtering
_ROOT_LEVEL = logging.DEBUG - 10


def _jsonl_handler(log_config: Dict[str, Any]) -> logging.Handler:
    log_dir = Path(str(log_config["log_dir"]))
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_dir / str(log_config.get("jsonl_file", "phrase-tts.jsonl")),
        maxBytes=int(log_config.get("rotate_max_bytes", 10 * 1024 * 1024)),
        backupCount=int(log_config.get("rotate_backup_count", 5)),
        encoding="utf-8",
        delay=True,
    )
    # The file keeps every record the numeric level lets through
    handler.setLevel(_ROOT_LEVEL)
    handler.setFormatter(JsonlFormatter())
    return handler


def configure_logging(level: Optional[int | str | LogLevel] = None, force: bool = False) -> None:
    """
    Install phrase-tts handlers on the root logger.

    Console output goes to stdout through ColoredConsoleFormatter. When
    `log_dir` is configured (settings or PHRASE_TTS_LOG_DIR) every record is
    also appended to a rotating JSONL file. Called lazily by get_logger();
    later calls are no-ops unless `force` is set.

    Args:
        level: Overrides the configured level (1-4, a name, or LogLevel).
        force: Rebuild handlers even if logging is already configured.
    """
    if is_configured() and not force:
        return

    formatters.USE_COLORS = supports_color()
    log_config = read_logging_config()
    set_log_config(log_config)
    set_level(coerce_level(level or log_config.get("level", LogLevel.NORMAL)))

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(LEVEL_MAP.get(get_level(), logging.INFO))
    console.setFormatter(ColoredConsoleFormatter())
    handlers = [console]
    if log_config.get("log_dir"):
        handlers.append(_jsonl_handler(log_config))

    root = logging.getLogger()
    root.setLevel(_ROOT_LEVEL)
    root.handlers = handlers
    set_configured(True)


def _record_extra(tag: str, numeric_level: int, fields: Dict[str, Any]) -> Dict[str, Any]:
    """
    Build the `extra` mapping the formatters read.

    `event` and `seconds` are lifted out of the free-form fields so both
    formatters can render them in fixed positions; whatever remains is
    printed as key=value pairs.
    """
    event = fields.pop("event", None)
    seconds = fields.pop("seconds", None)
    return {
        "tag": tag,
        "numeric_level": numeric_level,
        "request_id": get_request_id(),
        "identity": get_identity(),
        "event": event,
        "seconds": seconds,
        "extra_data": fields or None,
    }


def _emit(
    logger: logging.Logger,
    stdlib_level: int,
    tag: str,
    numeric_level: LogLevel,
    msg: str,
    fields: Dict[str, Any],
) -> None:
    # Numeric level gate first; handlers then filter on the stdlib level
    if numeric_level > get_level():
        return
    logger.log(stdlib_level, msg, extra=_record_extra(tag, int(numeric_level), fields))


def get_logger(name: str = "phrase-tts") -> logging.Logger:
    """
    Return a named logger, configuring logging on first use.

    Names follow `phrase-tts.<component>` (pipeline, storage, cache-manager,
    rate-limiter, api, ...).
    """
    configure_logging()
    return logging.getLogger(name)


# Request lifecycle: hits, misses, evictions, denials
def info(logger: logging.Logger, msg: str, **fields: Any) -> None:
    _emit(logger, logging.INFO, "INFO", LogLevel.NORMAL, msg, fields)


def warn(logger: logging.Logger, msg: str, **fields: Any) -> None:
    """Recoverable trouble: a vanished cache file, a failed converter, a rate limit hit."""
    _emit(logger, logging.WARNING, "WARN", LogLevel.NORMAL, msg, fields)


def success(logger: logging.Logger, msg: str, **fields: Any) -> None:
    _emit(logger, logging.INFO, "SUCCESS", LogLevel.NORMAL, msg, fields)


# Always shown, even at MINIMAL
def error(logger: logging.Logger, msg: str, **fields: Any) -> None:
    _emit(logger, logging.ERROR, "ERROR", LogLevel.MINIMAL, msg, fields)


def fail(logger: logging.Logger, msg: str, **fields: Any) -> None:
    """A request ended in an error response."""
    _emit(logger, logging.ERROR, "FAIL", LogLevel.MINIMAL, msg, fields)


def verbose(logger: logging.Logger, msg: str, **fields: Any) -> None:
    """Stage timings and limiter decisions (level 3)."""
    _emit(logger, logging.DEBUG, "INFO", LogLevel.VERBOSE, msg, fields)


def debug(logger: logging.Logger, msg: str, **fields: Any) -> None:
    """Index and manager internals (level 4)."""
    _emit(logger, LEVEL_MAP[LogLevel.DEBUG], "DEBUG", LogLevel.DEBUG, msg, fields)


__all__ = [
    # levels
    "LogLevel", "LEVEL_MAP", "LEVEL_NAMES", "coerce_level",
    # context
    "get_request_id", "set_request_id", "get_identity", "set_identity",
    "get_level", "set_level", "get_level_name", "get_log_config",
    # formatters
    "Colors", "supports_color", "JsonlFormatter", "ColoredConsoleFormatter",
    # setup and helpers
    "configure_logging", "get_logger",
    "info", "warn", "success", "error", "fail", "verbose", "debug",
]
