"""
Centralized logging configuration for the provisioner.

Usage in any module:
    import logging
    logger = logging.getLogger(__name__)

The CLI calls setup_logging() once at startup. Log output goes to
/var/log/provisioner.log (or /tmp/provisioner.log when that is not
writable) with format:
    [HH:MM:SS.mmm] [LEVEL] [module] message

Secrets registered with register_secret() are replaced by *** in every
record, whichever handler writes it.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional

LOG_FILE_PATH = '/var/log/provisioner.log'
FALLBACK_LOG_FILE_PATH = '/tmp/provisioner.log'

REDACTED = '***'

# Flag to track if logging has been configured
_logging_configured = False
_active_log_file: Optional[str] = None
_secrets: set = set()


def register_secret(value: str) -> None:
    """Redact ``value`` from all log output until forget_secret() is called."""
    if value:
        _secrets.add(value)


def forget_secret(value: str) -> None:
    _secrets.discard(value)


def redact(text: str) -> str:
    for secret in _secrets:
        text = text.replace(secret, REDACTED)
    return text


class SecretFilter(logging.Filter):
    """Rewrites records so registered secrets never reach a handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        if _secrets:
            record.msg = redact(record.getMessage())
            record.args = None
            if record.exc_info and not record.exc_text:
                record.exc_text = logging.Formatter().formatException(record.exc_info)
            if record.exc_text:
                record.exc_text = redact(record.exc_text)
            if record.stack_info:
                record.stack_info = redact(record.stack_info)
        return True


def _open_file_handler(path: str) -> Optional[RotatingFileHandler]:
    try:
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        return RotatingFileHandler(
            path,
            maxBytes=5*1024*1024,  # 5MB
            backupCount=3,
            encoding='utf-8'
        )
    except OSError:
        return None


def setup_logging(console_level=logging.INFO, log_file: Optional[str] = None) -> Optional[str]:
    """Configure the root logger with file and console handlers.

    Call this once at application startup (in cli.main).

    Returns:
        Path of the log file in use, or None if no file could be opened
    """
    global _logging_configured, _active_log_file
    if _logging_configured:
        return _active_log_file

    formatter = logging.Formatter(
        '[%(asctime)s.%(msecs)03d] [%(levelname)s] [%(name)s] %(message)s',
        datefmt='%H:%M:%S'
    )
    secret_filter = SecretFilter()

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # File gets everything
    candidates = [log_file] if log_file else [LOG_FILE_PATH, FALLBACK_LOG_FILE_PATH]
    for path in candidates:
        file_handler = _open_file_handler(path)
        if file_handler is not None:
            file_handler.setFormatter(formatter)
            file_handler.setLevel(logging.DEBUG)
            file_handler.addFilter(secret_filter)
            root_logger.addHandler(file_handler)
            _active_log_file = path
            break

    console_handler = logging.StreamHandler(sys.__stderr__)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(console_level)
    console_handler.addFilter(secret_filter)
    root_logger.addHandler(console_handler)

    # Suppress noisy third-party loggers
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('asyncio').setLevel(logging.WARNING)
    logging.getLogger('pynnex').setLevel(logging.WARNING)

    _logging_configured = True

    logger = logging.getLogger('logger')
    if _active_log_file:
        logger.info(f"Logging initialized, writing to {_active_log_file}")
    else:
        logger.warning(f"Could not open any of {candidates}, logging to console only")
    return _active_log_file
