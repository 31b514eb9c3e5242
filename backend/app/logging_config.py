"""
Structured logging configuration.

Every module logger in this package lives under the `backend` namespace
(including the audit logger, `backend.security.audit`), so one handler on
`backend` covers them all. Flask's app.logger is pointed at the same
handlers.

LOG_FORMAT=json renders one JSON object per line; security events carry
their fields under "security_event". Anything else renders plain text.
"""

import json
import logging
from datetime import datetime, timezone

from flask import Flask

_ROOT_LOGGER = "backend"


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

        event = getattr(record, 'security_event', None)
        if event is not None:
            log_entry['security_event'] = event

        return json.dumps(log_entry, default=str)


def configure_logging(app: Flask) -> logging.Logger:
    """Installs the console handler on the `backend` logger and on app.logger."""
    level_name = str(app.config.get('LOG_LEVEL', 'INFO')).upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler()
    handler.setLevel(logging.DEBUG)
    if app.config.get('LOG_FORMAT', 'json') == 'json':
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))

    logger = logging.getLogger(_ROOT_LOGGER)
    logger.setLevel(level)
    logger.handlers = [handler]

    app.logger.handlers = logger.handlers
    app.logger.setLevel(level)

    return logger
