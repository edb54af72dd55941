"""
Logging setup for the web app, the RQ backfill worker and scripts/.

Called once from create_app() and from scripts/backfill_cycles.py. Loggers
are named after the module area ('pipeline.ingest', 'pipeline.migration',
'services.gamification', ...), so one upload or one backfill can be followed
by filtering on the logger name.

Text output carries the thread name because ingestion fans representatives
out to 'ingest_N' worker threads. JSON output (LOG_FORMAT=json) adds it only
for worker threads, plus any of CONTEXT_FIELDS passed through `extra=`.
"""
import json
import logging
import os
import sys
from datetime import datetime, timezone

# Keys copied from a record's `extra=` into the JSON entry
CONTEXT_FIELDS = ('upload_id', 'job_id', 'batch')

TEXT_FORMAT = '[%(asctime)s] %(levelname)s %(name)s [%(threadName)s] %(message)s'


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for the log aggregator."""

    def format(self, record):
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        if record.threadName and record.threadName != 'MainThread':
            entry['thread'] = record.threadName
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


# Chatty at INFO; urllib3 logs a line per gamification connection
_NOISY_LOGGERS = [
    'urllib3',
    'rq.worker',
    'sqlalchemy.engine',
    'alembic.runtime.migration',
]


def configure_logging(app=None):
    """
    Install a single stderr handler on the root logger.

    Environment variables:
        LOG_LEVEL   Python level name (default: INFO); unknown names fall back to INFO
        LOG_FORMAT  "text" (default) or "json"
        LOG_SQL     "1" keeps sqlalchemy.engine at INFO to trace backfill queries
    """
    level = getattr(logging, os.getenv('LOG_LEVEL', 'INFO').upper(), None)
    if not isinstance(level, int):
        level = logging.INFO

    root = logging.getLogger()
    root.setLevel(level)

    # create_app() can run more than once per process in tests
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    if os.getenv('LOG_FORMAT', 'text').lower() == 'json':
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    if os.getenv('LOG_SQL') == '1':
        logging.getLogger('sqlalchemy.engine').setLevel(logging.INFO)

    if app is not None:
        app.logger.setLevel(level)
