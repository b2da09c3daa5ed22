"""
Request Context and Configuration State for Logging.

Request correlation uses contextvars so that every record emitted while a
request is being served carries its request id and caller identity, both
in worker threads started by FastAPI and in the pipeline's own code.

Environment Variables:
    - PHRASE_TTS_LOG_LEVEL: Override log level (1-4 or name)
    - PHRASE_TTS_LOG_DIR: Directory for the JSONL log file
    - PHRASE_TTS_JSONL_FILE: JSONL filename (default phrase-tts.jsonl)
    - PHRASE_TTS_LOG_ROTATE_BYTES: Max file size before rotation
    - PHRASE_TTS_LOG_ROTATE_BACKUP: Number of rotated files to keep
"""
from __future__ import annotations

import os
from contextvars import ContextVar
from typing import Any, Dict

import yaml

from .levels import LEVEL_NAMES, LogLevel

# "-" marks records emitted outside a request
_request_id: ContextVar[str] = ContextVar("request_id", default="-")
_identity: ContextVar[str] = ContextVar("identity", default="-")

_configured: bool = False
_log_config: Dict[str, Any] = {}
_current_level: LogLevel = LogLevel.NORMAL


def get_request_id() -> str:
    """Get the current request ID, or "-" outside a request."""
    return _request_id.get()


def set_request_id(rid: str) -> None:
    """
    Set request ID in context for log correlation.

    Args:
        rid: Request identifier string (typically a 12 char UUID prefix).
    """
    _request_id.set(rid)


def get_identity() -> str:
    """Get the caller identity bound to the current context."""
    return _identity.get()


def set_identity(identity: str) -> None:
    """Bind a caller identity to the current context."""
    _identity.set(identity)


def get_level() -> LogLevel:
    """Get the current numeric log level."""
    return _current_level


def set_level(level: LogLevel) -> None:
    """Set the current numeric log level."""
    global _current_level
    _current_level = level


def get_level_name() -> str:
    """Get the current log level as a name ("NORMAL", ...)."""
    return LEVEL_NAMES.get(int(_current_level), "NORMAL")


def is_configured() -> bool:
    return _configured


def set_configured(value: bool) -> None:
    global _configured
    _configured = value


def get_log_config() -> Dict[str, Any]:
    return _log_config


def set_log_config(config: Dict[str, Any]) -> None:
    global _log_config
    _log_config = config


def read_logging_config() -> Dict[str, Any]:
    """
    Read logging configuration from settings file and environment.

    Configuration priority (highest to lowest):
        1. Environment variables (PHRASE_TTS_LOG_LEVEL, etc.)
        2. settings.yaml logging section
        3. Default values

    Returns:
        Dictionary with resolved logging configuration.
    """
    cfg: Dict[str, Any] = {}

    try:
        from phrase_tts.core.config import load_settings
        settings = load_settings()
        cfg.update(settings.raw.get("logging", {}) or {})
    except (OSError, ValueError, yaml.YAMLError):
        # No settings file (or unreadable): fall back to defaults
        pass

    if os.getenv("PHRASE_TTS_LOG_LEVEL"):
        cfg["level"] = os.environ["PHRASE_TTS_LOG_LEVEL"]
    if os.getenv("PHRASE_TTS_LOG_DIR"):
        cfg["log_dir"] = os.environ["PHRASE_TTS_LOG_DIR"]
    if os.getenv("PHRASE_TTS_JSONL_FILE"):
        cfg["jsonl_file"] = os.environ["PHRASE_TTS_JSONL_FILE"]
    for env_name, key in (
        ("PHRASE_TTS_LOG_ROTATE_BYTES", "rotate_max_bytes"),
        ("PHRASE_TTS_LOG_ROTATE_BACKUP", "rotate_backup_count"),
    ):
        value = os.getenv(env_name)
        if value:
            try:
                cfg[key] = int(value)
            except ValueError:
                pass  # ignore malformed override

    return cfg
