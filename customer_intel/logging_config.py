"""
Logging setup shared by the Flask app, the RQ worker entry point and the CLI.

LOG_FORMAT=json switches to one JSON object per line so run/step context
(run_id, nb_code, phase, error_type passed via ``extra=``) can be filtered
in a log aggregator. Text output is the default for local work.
"""
import json
import logging
import os
import sys
from datetime import datetime, timezone

# Keys lifted from LogRecord extras into the JSON entry when present
CONTEXT_FIELDS = ('run_id', 'nb_code', 'phase', 'error_type', 'attempt')

TEXT_FORMAT = '[%(asctime)s] %(levelname)s %(name)s: %(message)s'

QUIET_LOGGERS = ('urllib3', 'openai', 'httpcore', 'httpx', 'rq.worker', 'alembic')


class JSONFormatter(logging.Formatter):
    """One JSON object per record, carrying any run/step context extras."""

    def format(self, record):
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def resolve_level(name=None) -> int:
    """Map a level name (or LOG_LEVEL) to a logging constant, INFO when unknown."""
    name = (name or os.getenv('LOG_LEVEL', 'INFO')).upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def configure_logging(app=None, stream=None, level=None):
    """
    Install a single root handler. Safe to call repeatedly; earlier handlers
    are replaced rather than stacked.

    ``level`` overrides LOG_LEVEL (the CLI passes ``--log-level`` here).
    """
    level = resolve_level(level)
    if os.getenv('LOG_FORMAT', 'text').lower() == 'json':
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if app is not None:
        app.logger.setLevel(level)
    return handler
