#!/usr/bin/env python3
"""
Logging Utilities

Console/file logging setup plus helpers for framing run phases and reporting
progress across concurrent hypothesis workers.
"""

import copy
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path
from typing import Optional


class Colors:
    """ANSI color codes for terminal output"""
    RESET = '\033[0m'
    BOLD = '\033[1m'
    DIM = '\033[2m'

    RED = '\033[31m'
    GREEN = '\033[32m'
    YELLOW = '\033[33m'
    CYAN = '\033[36m'
    WHITE = '\033[37m'

    BG_RED = '\033[41m'


class ColoredFormatter(logging.Formatter):
    """Formatter that colors the level name on terminals"""

    COLORS = {
        'DEBUG': Colors.DIM + Colors.CYAN,
        'INFO': Colors.GREEN,
        'WARNING': Colors.YELLOW,
        'ERROR': Colors.RED,
        'CRITICAL': Colors.BG_RED + Colors.WHITE + Colors.BOLD
    }

    def format(self, record):
        # Color a copy so file handlers sharing the record stay plain
        colored = copy.copy(record)
        color = self.COLORS.get(record.levelname)
        if color:
            colored.levelname = f"{color}{record.levelname}{Colors.RESET}"
        return super().format(colored)


DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

NOISY_LOGGERS = ['asyncio']


def setup_logging(
    level: int = logging.INFO,
    log_format: Optional[str] = None,
    log_file: Optional[Path] = None,
    use_colors: bool = True,
    include_timestamp: bool = True
) -> None:
    """
    Configure the root logger with a console handler and optional file handler.

    Safe to call more than once (e.g. again once the working directory, and
    so the log file location, is known).

    Args:
        level: Logging level (default: INFO)
        log_format: Custom format string (optional)
        log_file: Optional file path for logging (no colors)
        use_colors: Use colored output for console (default: True)
        include_timestamp: Include timestamp in logs (default: True)
    """
    if log_format is None:
        log_format = DEFAULT_FORMAT if include_timestamp else '%(name)s - %(levelname)s - %(message)s'

    handlers = []

    console_handler = logging.StreamHandler(sys.stderr)
    if use_colors and sys.stderr.isatty():
        console_handler.setFormatter(ColoredFormatter(log_format))
    else:
        console_handler.setFormatter(logging.Formatter(log_format))
    handlers.append(console_handler)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setFormatter(logging.Formatter(log_format))
        handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


class ProgressLogger:
    """
    Progress reporting for a fixed number of work items.

    Every completion is logged (hypothesis runs are few and slow), with an
    ETA derived from the average time per finished item.

    Usage:
        progress = ProgressLogger("Hypothesis testing", total=5)
        progress.increment("H001 completed")
        progress.complete()
    """

    def __init__(self, task_name: str, total: int, logger: Optional[logging.Logger] = None):
        """
        Args:
            task_name: Name of task being tracked
            total: Total number of items
            logger: Logger instance (module logger if None)
        """
        self.task_name = task_name
        self.total = total
        self.logger = logger or logging.getLogger(__name__)
        self.current = 0
        self.start_time = datetime.now()

    def update(self, current: int, message: Optional[str] = None) -> None:
        """Set progress to current and log it"""
        self.current = current
        percent = (current / self.total * 100) if self.total > 0 else 100
        elapsed = (datetime.now() - self.start_time).total_seconds()

        eta_str = ""
        if 0 < current < self.total and elapsed > 0:
            remaining = (self.total - current) * (elapsed / current)
            eta_str = f", ETA: {remaining:.0f}s"

        msg = f"{self.task_name}: {current}/{self.total} ({percent:.0f}%{eta_str})"
        if message:
            msg += f" - {message}"
        self.logger.info(msg)

    def increment(self, message: Optional[str] = None) -> None:
        """Advance progress by one item"""
        self.update(self.current + 1, message)

    def complete(self, message: Optional[str] = None) -> None:
        """Log a summary line for the whole task"""
        elapsed = (datetime.now() - self.start_time).total_seconds()
        msg = f"{self.task_name}: finished {self.current}/{self.total} in {elapsed:.1f}s"
        if message:
            msg += f" - {message}"
        self.logger.info(msg)


class LogSection:
    """
    Context manager that frames a block of work in the log.

    Usage:
        with LogSection("Phase: reproduction", logger):
            ...
    """

    def __init__(
        self,
        section_name: str,
        logger: Optional[logging.Logger] = None,
        level: int = logging.INFO,
        separator: str = "="
    ):
        self.section_name = section_name
        self.logger = logger or logging.getLogger(__name__)
        self.level = level
        self.separator = separator
        self.start_time = None

    def __enter__(self):
        self.start_time = datetime.now()
        separator_line = self.separator * 60

        self.logger.log(self.level, separator_line)
        self.logger.log(self.level, self.section_name)
        self.logger.log(self.level, separator_line)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        elapsed = (datetime.now() - self.start_time).total_seconds()

        if exc_type is not None:
            self.logger.error(f"{self.section_name} FAILED after {elapsed:.1f}s: {exc_val}")
        else:
            self.logger.log(self.level, f"{self.section_name} completed in {elapsed:.1f}s")

        self.logger.log(self.level, self.separator * 60)
        return False  # Don't suppress exceptions


def log_exception(logger: logging.Logger, exc: BaseException, context: str = "") -> None:
    """
    Log an exception as one error line, with the traceback at DEBUG.

    Args:
        logger: Logger instance
        exc: Exception to log
        context: Optional context description
    """
    msg = "Exception occurred"
    if context:
        msg += f" during {context}"
    msg += f": {type(exc).__name__}: {exc}"

    logger.error(msg)
    logger.debug("Traceback:\n" + "".join(traceback.format_tb(exc.__traceback__)))
