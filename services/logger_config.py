# services/logger_config.py
import logging
from logging.handlers import RotatingFileHandler
import os
from typing import Optional

from config import settings

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s'
LOG_MAX_BYTES = 5 * 1024 * 1024
LOG_BACKUP_COUNT = 5


def _build_file_handler(path: str, formatter: logging.Formatter) -> Optional[logging.Handler]:
    """Rotating file handler for everything DEBUG and up; None when the log dir is not writable."""
    try:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        handler = RotatingFileHandler(path, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT)
    except OSError as e:
        print(f"Error setting up file logger at {path}: {e}")
        return None
    handler.setFormatter(formatter)
    handler.setLevel(logging.DEBUG)
    return handler


def setup_logging(log_file_path: Optional[str] = None, console_level: int = logging.INFO) -> logging.Logger:
    """
    Configure the medical_rag logger with a rotating log file and the console.

    Download progress and per-query search details go to the file only
    (DEBUG); the console gets `console_level` and up. Calling it again
    replaces the handlers instead of stacking them.
    """
    logger = logging.getLogger(settings.LOGGER_NAME)
    if logger.hasHandlers():
        logger.handlers.clear()
    logger.setLevel(logging.DEBUG)
    logger.propagate = True

    formatter = logging.Formatter(LOG_FORMAT)

    file_handler = _build_file_handler(log_file_path or settings.LOG_FILE_PATH, formatter)
    if file_handler is not None:
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(console_level)
    logger.addHandler(console_handler)

    logger.info("Logging configured successfully.")
    return logger
