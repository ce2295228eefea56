"""Logging for the hourbook command line.

Command results are JSON on stdout, so log records only ever go to stderr
or to the configured log file.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .config import Config, LoggingConfig

ROOT_LOGGER = "hourbook"
CONSOLE_FORMAT = "%(levelname)-5s [%(name)s] %(message)s"
FILE_FORMAT = "%(asctime)s %(levelname)-5s [%(name)s] %(message)s"

_initialized = False


def _resolve_level(log_config: LoggingConfig, verbose: bool) -> int:
    if verbose:
        return logging.DEBUG
    level = logging.getLevelName(log_config.level.upper())
    return level if isinstance(level, int) else logging.INFO


def _console_handler(level: int) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    return handler


def _file_handler(log_config: LoggingConfig, level: int) -> logging.Handler:
    path = Path(log_config.file).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    if log_config.rotate:
        handler: logging.Handler = RotatingFileHandler(
            path,
            maxBytes=log_config.max_size_mb * 1024 * 1024,
            backupCount=log_config.backup_count,
        )
    else:
        handler = logging.FileHandler(path)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    return handler


def setup_logging(config: Config, verbose: bool = False) -> None:
    """Attach handlers to the ``hourbook`` logger once per process.

    ``verbose`` forces DEBUG regardless of ``[logging] level``.
    """
    global _initialized
    if _initialized:
        return
    _initialized = True

    log_config = config.logging
    level = _resolve_level(log_config, verbose)

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)
    logger.handlers.clear()

    if log_config.output in ("console", "both"):
        logger.addHandler(_console_handler(level))
    if log_config.output in ("file", "both") and log_config.file:
        logger.addHandler(_file_handler(log_config, level))


def reset_logging() -> None:
    """Drop handlers and allow setup_logging to run again (tests)."""
    global _initialized
    _initialized = False
    logging.getLogger(ROOT_LOGGER).handlers.clear()
