"""Centralized logging configuration for the Reminder Scheduling Engine.

Every component logs through its own named logger into its own rotating
file under LOG_DIR (``REMINDER_LOG_DIR`` overrides the default ``logs/``
beside the code), mirrored to the console.
"""

import logging
from logging.handlers import RotatingFileHandler
import os

LOG_DIR = os.environ.get("REMINDER_LOG_DIR") or os.path.join(os.path.dirname(__file__), 'logs')
os.makedirs(LOG_DIR, exist_ok=True)

LOG_LEVEL = logging.getLevelName(os.environ.get("REMINDER_LOG_LEVEL", "INFO").upper())
if not isinstance(LOG_LEVEL, int):
    LOG_LEVEL = logging.INFO

LOG_FORMAT = '[%(asctime)s] %(levelname)s - %(name)s - %(message)s'

# Rotation: 10MB per file, 5 backups
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5


def setup_logger(name: str, log_file: str = 'engine.log') -> logging.Logger:
    """Named logger writing to `log_file` under LOG_DIR and to the console.

    Args:
        name: Logger name (usually __name__)
        log_file: Log file name (e.g., 'queue.log', 'recompute.log')

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Avoid duplicate handlers
    if logger.handlers:
        return logger

    logger.setLevel(LOG_LEVEL)
    formatter = logging.Formatter(LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')

    file_handler = RotatingFileHandler(
        os.path.join(LOG_DIR, log_file),
        maxBytes=MAX_LOG_BYTES,
        backupCount=LOG_BACKUPS,
        encoding='utf-8'
    )
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    # stderr, so the MCP stdio transport keeps stdout to itself
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


def quiet_third_party_loggers():
    """Reduce noise from the web, database and HTTP client stacks."""
    for noisy in ('uvicorn', 'uvicorn.access', 'fastapi', 'sqlalchemy', 'httpx', 'mcp'):
        logging.getLogger(noisy).setLevel(logging.WARNING)


quiet_third_party_loggers()
