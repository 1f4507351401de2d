"""
Logging configuration module for Bot Builder.
Sets up logging with file rotation, proper formatting and secret redaction.
"""
import logging
import sys
from logging.handlers import RotatingFileHandler
from typing import Iterable, Optional

from config import LOG_DIR, LOG_FILE, LOG_MAX_BYTES, LOG_BACKUP_COUNT
from diagnostics import redact_text


class SecretRedactingFilter(logging.Filter):
    """Masks API keys and bearer tokens in every record before it is emitted."""

    def __init__(self, secrets: Optional[Iterable[str]] = None):
        super().__init__()
        self._secrets = list(secrets) if secrets is not None else None

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        cleaned = redact_text(message, self._secrets)
        if cleaned != message:
            record.msg = cleaned
            record.args = None
        return True


def setup_logging(log_level: int = logging.INFO, log_to_file: bool = True) -> logging.Logger:
    """
    Set up logging configuration.

    Args:
        log_level: Logging level (default: INFO)
        log_to_file: Also write to the rotating log file under LOG_DIR

    Returns:
        logging.Logger: Configured root logger
    """
    detailed_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    simple_formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    redactor = SecretRedactingFilter()

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    if log_to_file:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding='utf-8'
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(detailed_formatter)
        file_handler.addFilter(redactor)
        root_logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(simple_formatter)
    console_handler.addFilter(redactor)
    root_logger.addHandler(console_handler)

    # Suppress noisy third-party loggers
    logging.getLogger('aiohttp').setLevel(logging.WARNING)
    logging.getLogger('aiohttp.access').setLevel(logging.WARNING)
    logging.getLogger('asyncio').setLevel(logging.WARNING)

    root_logger.info("=" * 60)
    root_logger.info("Bot Builder - Logging initialized")
    if log_to_file:
        root_logger.info(f"Log file: {LOG_FILE}")
    root_logger.info(f"Log level: {logging.getLevelName(log_level)}")
    root_logger.info("=" * 60)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a module.

    Args:
        name: Logger name (usually __name__)

    Returns:
        logging.Logger: Logger instance
    """
    return logging.getLogger(name)
