"""
Logging Setup for MongoDB Diff

Console logging for operators and optional one-JSON-object-per-line
logging for log shippers, both stamped with the current run ID.
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Optional

from mongodiff.utils.correlation import get_run_id, run_id_filter

CONSOLE_FORMAT = '[%(asctime)s] %(levelname)s [%(threadName)s] - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


class StructuredJSONFormatter(logging.Formatter):
    """JSON formatter with run ID support."""

    EXTRA_FIELDS = ('namespace', 'duration', 'mismatches', 'outcome')

    def format(self, record):
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'run_id': getattr(record, 'run_id', None) or get_run_id(),
            'thread': record.threadName,
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        for name in self.EXTRA_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def configure_logging(
    level: int = logging.INFO,
    json_logging: Optional[bool] = None,
    logger_name: str = "mongodiff"
) -> logging.Logger:
    """
    Attach handlers to the package logger.

    Args:
        level: Log level
        json_logging: Emit JSON lines instead of console text; defaults to
            the JSON_LOGGING environment variable
        logger_name: Logger to configure

    Returns:
        The configured logger
    """
    if json_logging is None:
        json_logging = os.getenv('JSON_LOGGING', 'false').lower() == 'true'

    handler = logging.StreamHandler()
    if json_logging:
        handler.setFormatter(StructuredJSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT))
    handler.addFilter(run_id_filter)

    logger = logging.getLogger(logger_name)
    logger.setLevel(level)
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
    logger.addHandler(handler)
    logger.propagate = False

    return logger
