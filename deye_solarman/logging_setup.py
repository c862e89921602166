"""Application logger: stdout plus an optional rotating file."""

import logging
import sys
from logging.handlers import RotatingFileHandler
from typing import List, Optional

LOGGER_NAME = "deye_solarman_mqtt"
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
ROTATE_BYTES = 5 * 1024 * 1024
ROTATE_BACKUPS = 3

_logger: Optional[logging.Logger] = None


def _handlers(log_file: Optional[str]) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(RotatingFileHandler(log_file, maxBytes=ROTATE_BYTES, backupCount=ROTATE_BACKUPS))
    return handlers


def setup_logging(log_level: str = "INFO", log_file: str = None) -> logging.Logger:
    """(Re)configure the application logger; unknown level names mean INFO.

    Calling it again (SIGHUP reload) replaces the handlers.
    """
    global _logger

    logger = logging.getLogger(LOGGER_NAME)
    level = logging.getLevelName(str(log_level).upper())
    logger.setLevel(level if isinstance(level, int) else logging.INFO)

    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()

    formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)
    for handler in _handlers(log_file):
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    _logger = logger
    return logger


def get_logger() -> logging.Logger:
    """The application logger, set up with defaults on first use."""
    return _logger or setup_logging()
