"""
Logging setup for the Connect Exporter.

Human-readable console output by default; JSON lines when JSON_LOGGING=true.
Both carry the correlation ID of the current poll cycle / evaluation tick.
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Optional

from src.utils.correlation import correlation_id_filter

CONSOLE_FORMAT = '[%(asctime)s] %(levelname)s %(name)s [%(correlation_id)s] - %(message)s'


class StructuredJSONFormatter(logging.Formatter):
    """JSON formatter with correlation ID support."""

    # Extra attributes promoted into the JSON document when present
    EXTRA_FIELDS = ('instance', 'connector', 'slot', 'alertname', 'state', 'duration')

    def format(self, record):
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'correlation_id': getattr(record, 'correlation_id', 'N/A'),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
            'thread': record.threadName,
        }

        for field in self.EXTRA_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: Optional[str] = None, json_logging: Optional[bool] = None) -> None:
    """
    Configure the root logger.

    Args:
        level: Log level name (defaults to LOG_LEVEL env var, then INFO)
        json_logging: Emit JSON lines (defaults to JSON_LOGGING env var)
    """
    level = (level or os.getenv('LOG_LEVEL', 'INFO')).upper()
    if json_logging is None:
        json_logging = os.getenv('JSON_LOGGING', 'false').lower() == 'true'

    handler = logging.StreamHandler()
    if json_logging:
        handler.setFormatter(StructuredJSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
    handler.addFilter(correlation_id_filter)

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    # urllib3 logs every retry/connection at DEBUG; keep it quiet
    logging.getLogger('urllib3').setLevel(logging.WARNING)
