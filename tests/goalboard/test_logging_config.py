"""Tests for structured logging configuration."""
import json
import logging
import os
import threading
from unittest.mock import MagicMock, patch

import pytest

from goalboard.logging_config import configure_logging, JSONFormatter


@pytest.fixture(autouse=True)
def _reset_root_logger():
    """Reset root logger state after each test."""
    root = logging.getLogger()
    original_level = root.level
    original_handlers = root.handlers[:]
    yield
    root.setLevel(original_level)
    root.handlers = original_handlers


class TestConfigureLogging:
    """Tests for configure_logging()."""

    def test_default_level_is_info(self):
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop('LOG_LEVEL', None)
            configure_logging()
        assert logging.getLogger().level == logging.INFO

    def test_log_level_env_var_case_insensitive(self):
        with patch.dict(os.environ, {'LOG_LEVEL': 'debug'}):
            configure_logging()
        assert logging.getLogger().level == logging.DEBUG

    def test_invalid_log_level_defaults_to_info(self):
        with patch.dict(os.environ, {'LOG_LEVEL': 'NONSENSE'}):
            configure_logging()
        assert logging.getLogger().level == logging.INFO

    def test_text_format_includes_logger_and_thread(self, capsys):
        with patch.dict(os.environ, {'LOG_FORMAT': 'text'}):
            configure_logging()
        logging.getLogger('pipeline.ingest').info("upload done")
        output = capsys.readouterr().err
        assert 'pipeline.ingest' in output
        assert 'upload done' in output
        assert '[MainThread]' in output

    def test_json_format_produces_parseable_json(self, capsys):
        with patch.dict(os.environ, {'LOG_FORMAT': 'json'}):
            configure_logging()
        logging.getLogger('pipeline.migration').info("batch %d/%d", 1, 3)
        parsed = json.loads(capsys.readouterr().err.strip())
        assert parsed['level'] == 'INFO'
        assert parsed['logger'] == 'pipeline.migration'
        assert parsed['message'] == 'batch 1/3'
        assert 'timestamp' in parsed
        assert 'thread' not in parsed

    def test_json_format_includes_exception(self, capsys):
        with patch.dict(os.environ, {'LOG_FORMAT': 'json'}):
            configure_logging()
        try:
            raise ValueError("boom")
        except ValueError:
            logging.getLogger('test.exc').error("failed", exc_info=True)
        parsed = json.loads(capsys.readouterr().err.strip())
        assert 'ValueError' in parsed['exception']

    def test_third_party_loggers_quieted_to_warning(self):
        configure_logging()
        for name in ['urllib3', 'rq.worker', 'sqlalchemy.engine']:
            assert logging.getLogger(name).level == logging.WARNING

    def test_log_sql_keeps_engine_logger_at_info(self):
        with patch.dict(os.environ, {'LOG_SQL': '1'}):
            configure_logging()
        assert logging.getLogger('sqlalchemy.engine').level == logging.INFO
        assert logging.getLogger('urllib3').level == logging.WARNING

    def test_no_duplicate_handlers_on_repeated_calls(self):
        configure_logging()
        configure_logging()
        assert len(logging.getLogger().handlers) == 1

    def test_sets_app_logger_level(self):
        app = MagicMock()
        with patch.dict(os.environ, {'LOG_LEVEL': 'WARNING'}):
            configure_logging(app)
        app.logger.setLevel.assert_called_once_with(logging.WARNING)


class TestJSONFormatter:

    def _record(self, **kwargs):
        return logging.LogRecord(
            name='test', level=logging.INFO, pathname='', lineno=0,
            msg='hello %s', args=('world',), exc_info=None, **kwargs,
        )

    def test_format_basic_record(self):
        parsed = json.loads(JSONFormatter().format(self._record()))
        assert parsed['message'] == 'hello world'
        assert parsed['logger'] == 'test'

    def test_worker_thread_name_included(self):
        out = {}

        def _worker():
            out['line'] = JSONFormatter().format(self._record())

        t = threading.Thread(target=_worker, name='ingest_0')
        t.start()
        t.join()
        assert json.loads(out['line'])['thread'] == 'ingest_0'

    def test_context_fields_from_extra(self):
        record = self._record()
        record.upload_id = '3f1c9a7d-upload'
        record.batch = 4
        parsed = json.loads(JSONFormatter().format(record))
        assert parsed['upload_id'] == '3f1c9a7d-upload'
        assert parsed['batch'] == 4
        assert 'job_id' not in parsed

    def test_extra_reaches_json_output(self, capsys):
        with patch.dict(os.environ, {'LOG_FORMAT': 'json'}):
            configure_logging()
        logging.getLogger('pipeline.migration_jobs').info("queued", extra={'job_id': 'job-1'})
        parsed = json.loads(capsys.readouterr().err.strip())
        assert parsed['job_id'] == 'job-1'
