"""
Logging configuration for the catalog site backend.
Console plus daily file sinks; security warnings also go to a separate error log.
"""

import sys
from datetime import datetime

from loguru import logger

from src import config

LOGS_DIR = config.LOGS_DIR
LOGS_DIR.mkdir(parents=True, exist_ok=True)

LOG_FILE = LOGS_DIR / f"catalog_{datetime.now().strftime('%Y-%m-%d')}.log"
ERROR_LOG_FILE = LOGS_DIR / f"errors_{datetime.now().strftime('%Y-%m-%d')}.log"

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)

LOG_FORMAT_FILE = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
    "{level: <8} | "
    "{name}:{function}:{line} | "
    "{message}"
)


def setup_logging():
    """Configure loguru sinks. Safe to call more than once."""
    logger.remove()

    level = "DEBUG" if config.ENVIRONMENT == "development" else "INFO"
    # Variable values in tracebacks only outside production
    diagnose = config.ENVIRONMENT != "production"

    logger.add(
        sys.stderr,
        format=LOG_FORMAT,
        level=level,
        colorize=True,
        backtrace=True,
        diagnose=diagnose,
    )

    logger.add(
        LOG_FILE,
        format=LOG_FORMAT_FILE,
        level=level,
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        backtrace=True,
        diagnose=diagnose,
        enqueue=True,
    )

    logger.add(
        ERROR_LOG_FILE,
        format=LOG_FORMAT_FILE,
        level="WARNING",
        rotation="10 MB",
        retention="14 days",
        compression="zip",
        backtrace=True,
        diagnose=diagnose,
        enqueue=True,
    )

    logger.info(f"Logging initialized. Log file: {LOG_FILE}")
    return logger


setup_logging()
