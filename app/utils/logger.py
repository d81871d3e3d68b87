# app/utils/logger.py
"""
Logging for the alert engine: console plus an optional rotating file.
Command outcomes, sync ticks and escalation scans all go through get_logger().
"""

import logging
import os
from logging.handlers import RotatingFileHandler

from app.config import settings

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.dirname(__file__)))
FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# httpx logs every request at INFO and the sync engine calls the store every few seconds
QUIET_LOGGERS = ("httpx", "httpcore")

_configured = False


def _file_handler(level: str, formatter: logging.Formatter):
    if not settings.LOG_DIR:
        return None
    log_dir = settings.LOG_DIR if os.path.isabs(settings.LOG_DIR) else os.path.join(PROJECT_ROOT, settings.LOG_DIR)
    os.makedirs(log_dir, exist_ok=True)
    handler = RotatingFileHandler(
        filename=os.path.join(log_dir, settings.LOG_FILE),
        maxBytes=settings.LOG_MAX_BYTES,
        backupCount=settings.LOG_BACKUP_COUNT,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging():
    """Attach handlers to the root logger once per process."""
    global _configured
    if _configured:
        return
    _configured = True

    level = settings.LOG_LEVEL.upper()
    formatter = logging.Formatter(fmt=FORMAT, datefmt=DATE_FORMAT)
    root = logging.getLogger()
    root.setLevel(level)

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(formatter)
    root.addHandler(console)

    file_handler = _file_handler(level, formatter)
    if file_handler is not None:
        root.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Named module logger. Call at the top of every module."""
    setup_logging()
    return logging.getLogger(name)
