"""Logging configuration for the signage player.

Provides colored console output with timestamps.
"""

from __future__ import annotations

import logging
import sys
from typing import ClassVar


class ColoredFormatter(logging.Formatter):
    """Formatter that adds ANSI colors to log levels."""

    COLORS: ClassVar[dict[int, str]] = {
        logging.DEBUG: "\033[36m",     # Cyan
        logging.INFO: "\033[32m",      # Green
        logging.WARNING: "\033[33m",   # Yellow
        logging.ERROR: "\033[31m",     # Red
        logging.CRITICAL: "\033[35m",  # Magenta
    }
    RESET = "\033[0m"
    BOLD = "\033[1m"

    def __init__(self, use_color: bool = True) -> None:
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelno, "") if self.use_color else ""
        # Format: "12:34:56 [INFO] cache: message"
        timestamp = self.formatTime(record, "%H:%M:%S")
        level = record.levelname
        name = record.name.replace("signage_player.", "")
        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"

        if color:
            return f"{timestamp} {color}[{level}]{self.RESET} {self.BOLD}{name}:{self.RESET} {message}"
        return f"{timestamp} [{level}] {name}: {message}"


def setup_logging(level: int = logging.INFO) -> None:
    """Configure logging for the application.

    Colors are only emitted when stdout is a terminal, so journald
    output stays readable.

    Args:
        level: Logging level (default: INFO)
    """
    root = logging.getLogger()
    root.setLevel(level)

    # Remove existing handlers
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(ColoredFormatter(use_color=sys.stdout.isatty()))
    root.addHandler(console)

    # Silence noisy libraries
    for name in ("httpx", "httpcore", "socketio", "engineio"):
        logging.getLogger(name).setLevel(logging.WARNING)
