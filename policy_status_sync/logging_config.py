"""Logging configuration for the policy status sync controller."""

import logging
import os
import sys
from collections.abc import Mapping
from pathlib import Path

LOG_LEVEL_ENV = "LOG_LEVEL"
LOG_FORMAT = "%(asctime)s - %(threadName)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# The kubernetes client logs every request body at DEBUG
LIBRARY_LEVELS = {
    "urllib3": logging.WARNING,
    "kubernetes": logging.WARNING,
}


def resolve_level(
    level: str | None = None, verbose: bool = False, environ: Mapping[str, str] | None = None
) -> int:
    """Pick the root log level.

    ``verbose`` wins, then an explicit level, then ``LOG_LEVEL``, then INFO.

    Raises:
        ValueError: If the level name is unknown
    """
    if verbose:
        return logging.DEBUG
    environ = os.environ if environ is None else environ
    name = (level or environ.get(LOG_LEVEL_ENV) or "INFO").upper()
    resolved = logging.getLevelName(name)
    if not isinstance(resolved, int):
        raise ValueError(f"unknown log level: {name}")
    return resolved


def setup_logging(
    level: str | None = None, log_file: Path | None = None, verbose: bool = False
) -> None:
    """Configure logging for the controller process.

    Every long-lived component runs on its own thread (watches, leader
    election, probes, the lease heartbeat), so the thread name is part of
    each line.

    Args:
        level: Logging level name; defaults to the LOG_LEVEL environment variable
        log_file: Optional path to a log file that always receives DEBUG output
        verbose: If True, log at DEBUG
    """
    root_level = resolve_level(level, verbose)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(root_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
            root_level = logging.DEBUG
        except OSError as e:
            logging.warning(f"Failed to create log file handler: {e}")

    root_logger.setLevel(root_level)
    for name, library_level in LIBRARY_LEVELS.items():
        logging.getLogger(name).setLevel(library_level)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Logger name (typically __name__)
    """
    return logging.getLogger(name)
