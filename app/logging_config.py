"""
Application logging.

Standard library logging with a JSON formatter for production and a compact
human-readable one for development. Call ``setup_logging()`` once at startup and
obtain module loggers with ``get_logger(__name__)``.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

from app.config import settings

_RESERVED = set(logging.LogRecord('', 0, '', 0, '', None, None).__dict__) | {'message', 'asctime'}


def _extra_fields(record: logging.LogRecord) -> dict:
    return {key: value for key, value in record.__dict__.items() if key not in _RESERVED}


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        extra = _extra_fields(record)
        if extra:
            payload['data'] = extra
        if record.exc_info:
            payload['exception'] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class DevelopmentFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now().strftime('%H:%M:%S')
        message = f'[{timestamp}] {record.levelname:8} {record.name}: {record.getMessage()}'
        extra = _extra_fields(record)
        if extra:
            message += ' (' + ' | '.join(f'{key}={value}' for key, value in extra.items()) + ')'
        if record.exc_info:
            message += '\n' + self.formatException(record.exc_info)
        return message


def setup_logging() -> None:
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonFormatter() if settings.environment == 'production' else DevelopmentFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    logging.getLogger('uvicorn.access').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
