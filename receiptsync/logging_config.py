"""Application-wide logging configuration utilities."""
from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from receiptsync import app_paths

_LOG_PATH: Optional[Path] = None

LOG_FILENAME = "receiptsync.log"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
MAX_LOG_BYTES = 1_000_000
LOG_BACKUPS = 3

# Request-level chatter from the Google client stack.
NOISY_LOGGERS = ("googleapiclient.discovery", "googleapiclient.discovery_cache", "google_auth_oauthlib", "urllib3")


def configure_logging(level: int = logging.INFO, *, console: bool = False) -> Path:
    """Send log records to a rotating file in the application data directory.

    The file rotates at ``MAX_LOG_BYTES`` and keeps ``LOG_BACKUPS`` older
    copies.  With ``console`` a stream handler mirrors the records for ``-v``
    on the command line.  Calling this again returns the existing path and
    adds no handlers.
    """

    global _LOG_PATH

    if _LOG_PATH is not None:
        return _LOG_PATH

    log_path = app_paths.ensure_directory(app_paths.LOG_DIR) / LOG_FILENAME
    root_logger = logging.getLogger()
    root_logger.setLevel(level if not root_logger.handlers else min(root_logger.level, level))
    formatter = logging.Formatter(LOG_FORMAT)

    if not any(getattr(handler, "baseFilename", None) == str(log_path) for handler in root_logger.handlers):
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUPS,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    if console and not any(type(handler) is logging.StreamHandler for handler in root_logger.handlers):
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        root_logger.addHandler(stream_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    _LOG_PATH = log_path
    root_logger.debug("Logging configured. Writing to %s", log_path)
    return log_path


def get_log_path() -> Path:
    """Return the log file location shown by ``receiptsync status``."""

    if _LOG_PATH is None:
        return configure_logging()
    return _LOG_PATH


__all__ = ["LOG_FORMAT", "configure_logging", "get_log_path"]
