"""
Log Formatters and Terminal Colors.

Two formatters are provided:

    JsonlFormatter: one JSON object per line, for the rotating log file.
        {"ts": "...", "level": 2, "tag": "INFO", "message": "hit",
         "request_id": "3f2a9c1b7d40", "identity": "alice",
         "seconds": 0.0004, "extra": {"key": "5a2b91c0"}}

    ColoredConsoleFormatter: a compact human-readable line.
        14:30:05 [ INFO  ] (3f2a9c1b7d40@alice) hit key=5a2b91c0 0.000s

Colors are disabled when stdout is not a TTY, when NO_COLOR is set, or
when PHRASE_TTS_NO_COLOR=1.
"""
from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime
from typing import Any, Dict


class Colors:
    """ANSI escape codes used by the console formatter."""
    RESET = "\033[0m"
    DIM = "\033[2m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    MAGENTA = "\033[35m"
    CYAN = "\033[36m"
    WHITE = "\033[37m"
    GRAY = "\033[90m"
    BRIGHT_RED = "\033[91m"
    BRIGHT_GREEN = "\033[92m"
    BRIGHT_YELLOW = "\033[93m"
    BRIGHT_CYAN = "\033[96m"


TAG_COLORS = {
    "SUCCESS": Colors.BRIGHT_GREEN,
    "FAIL": Colors.BRIGHT_RED,
    "ERROR": Colors.BRIGHT_RED,
    "WARN": Colors.BRIGHT_YELLOW,
    "INFO": Colors.BRIGHT_CYAN,
    "DEBUG": Colors.GRAY,
}

# Field values worth highlighting in the console
CACHE_STATUS_COLORS = {
    "hit": Colors.GREEN,
    "coalesced": Colors.CYAN,
    "miss": Colors.YELLOW,
    "uncached": Colors.RED,
}


def supports_color() -> bool:
    """
    Check if the terminal supports ANSI color codes.

    Returns:
        True if colors should be used, False otherwise.
    """
    if os.getenv("PHRASE_TTS_NO_COLOR", "0") == "1":
        return False
    if os.getenv("NO_COLOR"):
        return False
    isatty = getattr(sys.stdout, "isatty", None)
    if isatty is None or not isatty():
        return False
    return sys.platform != "win32" or "WT_SESSION" in os.environ


# Re-evaluated by configure_logging(); tests may flip it directly
USE_COLORS = supports_color()


def get_tag_color(tag: str) -> str:
    """Get the color for a log tag ("INFO", "WARN", ...)."""
    return TAG_COLORS.get(tag.upper(), Colors.WHITE)


def colorize(text: str, color: str) -> str:
    """Wrap text in a color if the console formatter is using colors."""
    if not USE_COLORS:
        return text
    return f"{color}{text}{Colors.RESET}"


class JsonlFormatter(logging.Formatter):
    """Format log records as JSON Lines for file output."""

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).astimezone().isoformat()

        payload: Dict[str, Any] = {
            "ts": ts,
            "level": getattr(record, "numeric_level", 2),
            "tag": getattr(record, "tag", record.levelname),
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", "-"),
            "identity": getattr(record, "identity", "-"),
        }

        event = getattr(record, "event", None)
        if event:
            payload["event"] = event

        seconds = getattr(record, "seconds", None)
        if seconds is not None:
            payload["seconds"] = seconds

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            payload["extra"] = extra_data

        return json.dumps(payload, ensure_ascii=False, default=str)


class ColoredConsoleFormatter(logging.Formatter):
    """
    Format log records with ANSI colors for console output.

    Output Format:
        HH:MM:SS [ TAG   ] (rid@identity) message key=value 0.123s
    """

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        tag = getattr(record, "tag", record.levelname)
        rid = getattr(record, "request_id", "-")
        identity = getattr(record, "identity", "-")

        parts = [
            colorize(ts, Colors.DIM),
            colorize(f"[{tag:^7}]", get_tag_color(tag)),
        ]
        if rid != "-" or identity != "-":
            who = rid if identity == "-" else f"{rid}@{identity}"
            parts.append(colorize(f"({who})", Colors.DIM + Colors.CYAN))
        parts.append(record.getMessage())

        event = getattr(record, "event", None)
        if event:
            parts.append(colorize(f"event={event}", Colors.BLUE))

        seconds = getattr(record, "seconds", None)
        if seconds is not None:
            if seconds < 0.1:
                time_color = Colors.GREEN
            elif seconds < 1.0:
                time_color = Colors.YELLOW
            else:
                time_color = Colors.RED
            parts.append(colorize(f"{seconds:.3f}s", time_color))

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            for k, v in extra_data.items():
                parts.append(colorize(f"{k}={v}", self._field_color(k, v)))

        return " ".join(parts)

    def _field_color(self, key: str, value: Any) -> str:
        """
        Pick a color for a structured field.

        Cache status values get their own palette, wait times and errors
        stand out, everything else is dimmed.
        """
        if key in ("cache", "cache_status") and isinstance(value, str):
            return CACHE_STATUS_COLORS.get(value, Colors.DIM)
        if key == "retry_after":
            return Colors.YELLOW
        if key in ("evicted", "bytes_freed") and value:
            return Colors.MAGENTA
        if key in ("error", "error_type", "code"):
            return Colors.RED
        return Colors.DIM
