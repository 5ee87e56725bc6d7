"""
Logging infrastructure for wormwatch.

Provides file-based logging with rotation and colored console output.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from .config import (
    LOG_FILE,
    LOG_MAX_BYTES,
    LOG_BACKUP_COUNT,
)


# Module-level logger
_logger: Optional[logging.Logger] = None


class ColorFormatter(logging.Formatter):
    """
    Formatter that adds colors for terminal output.
    """

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        saved = record.levelname
        record.levelname = f"{color}{record.levelname}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = saved


def setup_logging(
    log_to_file: bool = True,
    log_to_console: bool = True,
    log_level: str = "INFO",
    log_file: Optional[str] = None,
) -> logging.Logger:
    """
    Configure the logging system.

    Args:
        log_to_file: Enable rotating file logging
        log_to_console: Enable colored stderr logging
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Override the log file path

    Returns:
        Configured logger instance
    """
    global _logger

    if _logger is not None:
        return _logger

    level = getattr(logging, log_level.upper(), logging.INFO)
    _logger = logging.getLogger("wormwatch")
    _logger.setLevel(logging.DEBUG if log_to_file else level)
    _logger.propagate = False

    # Clear existing handlers
    _logger.handlers.clear()

    # File handler with rotation
    if log_to_file:
        path = log_file or LOG_FILE
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            path,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)  # Capture everything to file
        file_formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        file_handler.setFormatter(file_formatter)
        _logger.addHandler(file_handler)

    if log_to_console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        if sys.stderr.isatty():
            console_handler.setFormatter(ColorFormatter("[%(levelname)s] %(message)s"))
        else:
            console_handler.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
        _logger.addHandler(console_handler)

    return _logger


def reset_logging() -> None:
    """Drop the configured handlers so setup_logging can run again."""
    global _logger
    if _logger is not None:
        for handler in list(_logger.handlers):
            handler.close()
            _logger.removeHandler(handler)
    _logger = None


def get_logger() -> logging.Logger:
    """Get the wormwatch logger, initializing if necessary."""
    global _logger
    if _logger is None:
        _logger = setup_logging(log_to_file=False, log_to_console=True)
    return _logger


def log(msg: str) -> None:
    """Log an informational message."""
    get_logger().info(msg)


def log_error(msg: str) -> None:
    """Log an error message."""
    get_logger().error(msg)


def format_block(title: str, lines: list) -> str:
    """
    Format a titled block for log output.

    Args:
        title: Block title (displayed in brackets)
        lines: Content lines (will be indented)

    Returns:
        Formatted multi-line string
    """
    pad = "  "
    return "\n".join([f"[{title}]", *[pad + ln for ln in lines]])
