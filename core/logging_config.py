"""
Structured JSON logging configuration.

Module loggers come from ``logging.getLogger(__name__)``; this installs the
handlers on each top-level package logger plus the security event logger.
"""

import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

PACKAGE_LOGGERS = ("config", "core", "credentials", "sessions", "mfa", "credlife")


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record):
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        for attr in ('instance_id', 'user_id', 'event_type', 'topic', 'error_code',
                     'method', 'duration_ms'):
            value = getattr(record, attr, None)
            if value is not None:
                log_entry[attr] = value

        return json.dumps(log_entry, default=str)


def configure_logging(settings=None):
    """Configure structured logging for every package logger.

    Args:
        settings: Optional AppSettings; defaults to ``get_settings()``.

    Returns:
        List of configured loggers.
    """
    if settings is None:
        from config.settings import get_settings
        settings = get_settings()

    log_level = settings.log_level.upper()
    level = getattr(logging, log_level, logging.INFO)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG)

    if settings.log_format == 'json':
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))

    handlers = [console_handler]

    # File handler (if configured)
    if settings.log_file:
        file_handler = RotatingFileHandler(
            settings.log_file,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JSONFormatter())
        handlers.append(file_handler)

    loggers = []
    for name in PACKAGE_LOGGERS:
        logger = logging.getLogger(name)
        logger.setLevel(level)
        logger.handlers = list(handlers)
        logger.propagate = False
        loggers.append(logger)

    return loggers
