"""
Logging configuration for the Entra2Action1 connector.

Provides structured logging with console and rotating file output.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union


LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def parse_log_level(level: Union[str, int, None], default: int = logging.INFO) -> int:
    """
    Convert a level name from config or CLI into a logging constant.

    Args:
        level: "debug", "info", "warn"/"warning", "error", an int, or None.
        default: Level used when ``level`` is None or empty.

    Returns:
        The logging level constant.

    Raises:
        ValueError: If the name is not a known level.
    """
    if level is None or level == "":
        return default
    if isinstance(level, int):
        return level
    key = str(level).strip().lower()
    if key not in LEVELS:
        raise ValueError(
            f"Unknown log level '{level}'. Expected one of: debug, info, warn, error"
        )
    return LEVELS[key]


def setup_logger(
    name: str = "entra2action1",
    level: int = logging.INFO,
    log_dir: Optional[Path] = None,
    log_to_file: bool = True,
    log_to_console: bool = True,
) -> logging.Logger:
    """
    Set up a logger with console and optional file output.

    Calling it again on an already configured logger only updates the level,
    so the CLI can apply --log-level after config has been read.

    Args:
        name: Logger name.
        level: Logging level (e.g., logging.INFO, logging.DEBUG).
        log_dir: Directory for log files. Defaults to './logs'.
        log_to_file: Whether to log to a file.
        log_to_console: Whether to log to console.

    Returns:
        Configured logger instance.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Avoid duplicate handlers if logger already configured
    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(level)
        return logger

    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    if log_to_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_to_file:
        log_dir = log_dir or Path("./logs")
        log_dir.mkdir(parents=True, exist_ok=True)

        # Fixed name so rotation keeps working across runs
        log_file = log_dir / "entra2action1.log"

        # Max 5MB per file, keep 3 backup revisions
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=5 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8"
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str = "entra2action1") -> logging.Logger:
    """
    Get an existing logger or create a new one.

    Args:
        name: Logger name (use dotted names for hierarchy,
              e.g., 'entra2action1.sync_engine').

    Returns:
        Logger instance.
    """
    return logging.getLogger(name)
