"""Loguru sink setup."""
import sys

from loguru import logger

from .config import Config


def configure_logging(level: str = None, log_file: str = None):
    """Replace the default loguru sink with one honouring LOG_LEVEL, plus an optional rotating file."""
    logger.remove()
    logger.add(sys.stderr, level=(level or Config.LOG_LEVEL).upper(), enqueue=False)

    log_file = log_file if log_file is not None else Config.LOG_FILE
    if log_file:
        logger.add(log_file, level=(level or Config.LOG_LEVEL).upper(), rotation="10 MB", retention="14 days")
        logger.info(f"📝 Logging to {log_file}")
