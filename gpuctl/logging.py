"""Logging configuration for the gpuctl package."""
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from .config import Config


def setup_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """
    Set up a logger with the specified name and log level.

    Args:
        name: The name of the logger
        level: The logging level (default: logging.INFO)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Don't add handlers if they're already configured
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(Config.LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        logger.addHandler(handler)

    return logger


def setup_logging(
    debug_mode: bool = False,
    level: Optional[str] = None,
    log_file: Optional[str] = None,
    max_size_mb: int = 100,
    backup_count: int = 5,
) -> logging.Logger:
    """Configure the ``gpuctl`` logger hierarchy for a CLI run.

    Args:
        debug_mode: Force DEBUG level
        level: Level name used when not in debug mode (defaults to Config.LOG_LEVEL)
        log_file: Optional path of a rotating log file
        max_size_mb: Size in MB before the log file rotates
        backup_count: Number of rotated files to keep

    Returns:
        The configured ``gpuctl`` logger
    """
    if debug_mode:
        log_level = logging.DEBUG
    else:
        log_level = getattr(logging, (level or Config.LOG_LEVEL).upper(), logging.INFO)

    logger = setup_logger("gpuctl", log_level)
    for handler in logger.handlers:
        handler.setLevel(log_level)

    if log_file and not any(isinstance(h, RotatingFileHandler) for h in logger.handlers):
        path = Path(log_file).expanduser().absolute()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            filename=path,
            maxBytes=max_size_mb * 1024 * 1024,
            backupCount=backup_count
        )
        file_handler.setFormatter(logging.Formatter(Config.LOG_FORMAT))
        logger.addHandler(file_handler)
        logger.debug(f"Logging to file: {path}")

    logger.propagate = False
    return logger
