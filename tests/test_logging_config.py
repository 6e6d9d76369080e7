"""Tests for signage_player.logging_config."""

import logging
import sys

from signage_player.logging_config import ColoredFormatter, setup_logging


def _record(name="signage_player.cache", level=logging.WARNING, exc_info=None):
    return logging.LogRecord(name, level, __file__, 1, "disk %s", ("full",), exc_info)


def test_plain_format_strips_package_prefix():
    """Without color the line is 'HH:MM:SS [LEVEL] module: message'."""
    line = ColoredFormatter(use_color=False).format(_record())
    assert line.endswith("[WARNING] cache: disk full")
    assert "\033[" not in line


def test_colored_format_wraps_level():
    line = ColoredFormatter(use_color=True).format(_record())
    assert "\033[33m[WARNING]" in line


def test_exception_text_is_appended():
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        exc_info = sys.exc_info()
    line = ColoredFormatter(use_color=False).format(_record(exc_info=exc_info))
    assert "Traceback" in line
    assert "RuntimeError: boom" in line


def test_setup_logging_installs_single_handler():
    """Repeated setup replaces the handler and quiets library loggers."""
    root = logging.getLogger()
    saved = root.handlers[:], root.level
    try:
        setup_logging(logging.DEBUG)
        setup_logging(logging.DEBUG)
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, ColoredFormatter)
        assert logging.getLogger("httpx").level == logging.WARNING
    finally:
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])
