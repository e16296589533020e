"""
Logging configuration for PetGaze.

Provides consistent logging across the gaze engine with privacy-safe defaults.
"""

import logging
import sys
import time
from pathlib import Path
from typing import Optional


def setup_logger(
    name: str,
    level: str = "WARNING",
    log_file: Optional[Path] = None,
    enable_file_logging: bool = False,
) -> logging.Logger:
    """
    Set up a logger with console and optional file output.

    Privacy: File logging is OFF by default. Only local logging,
    no network handlers.

    Args:
        name: Logger name (typically the package name)
        level: Log level string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to log file (optional)
        enable_file_logging: Enable file logging (default: False for privacy)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    numeric_level = getattr(logging, level.upper(), logging.WARNING)
    logger.setLevel(numeric_level)

    # Prevent duplicate handlers
    if logger.handlers:
        return logger

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)

    formatter = logging.Formatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if enable_file_logging and log_file:
        try:
            file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
            file_handler.setLevel(numeric_level)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
            logger.info(f"File logging enabled: {log_file}")
        except (OSError, IOError) as e:
            logger.warning(f"Failed to enable file logging: {e}")

    logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


class ThrottledLogger:
    """
    Rate-limited wrapper for messages emitted once per frame.

    Repeated messages inside ``interval_sec`` are counted, and the count is
    reported with the next message that gets through.
    """

    def __init__(self, logger: logging.Logger, interval_sec: float = 5.0) -> None:
        self._logger = logger
        self._interval = interval_sec
        self._last_log_time = float("-inf")
        self._counter = 0

    def _emit(self, level: int, message: str, *args, **kwargs) -> bool:
        self._counter += 1
        now = time.monotonic()

        if now - self._last_log_time < self._interval:
            return False

        if args:
            message = message % args
        self._logger.log(level, "[%d] %s", self._counter, message, **kwargs)
        self._last_log_time = now
        self._counter = 0
        return True

    def warning(self, message: str, *args, **kwargs) -> bool:
        return self._emit(logging.WARNING, message, *args, **kwargs)

    def error(self, message: str, *args, **kwargs) -> bool:
        return self._emit(logging.ERROR, message, *args, **kwargs)

    @property
    def suppressed(self) -> int:
        """Messages swallowed since the last one that was emitted."""
        return self._counter
