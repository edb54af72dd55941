"""Tests for goalboard.pipeline.migration_jobs — backfill job control."""
import json
from datetime import date
from unittest.mock import MagicMock, patch

import pytest

from goalboard.errors import MigrationStateError
from goalboard.models.db_migration_run import DbMigrationRun
from goalboard.models.migration_job import MigrationJob
from goalboard.pipeline.migration_jobs import start_migration, cancel_migration, run_migration_job


@pytest.fixture
def job_redis():
    """Dict-backed stand-in for the Redis keys MigrationJob touches."""
    store = {}
    mock = MagicMock()
    mock.get.side_effect = store.get
    mock.setex.side_effect = lambda key, ttl, value: store.__setitem__(key, value)

    def _set(key, value, nx=False, ex=None):
        if nx and key in store:
            return None
        store[key] = value
        return True

    mock.set.side_effect = _set
    mock.delete.side_effect = lambda key: store.pop(key, None)
    mock.zadd.return_value = 1
    mock.zrevrange.return_value = []
    mock.store = store
    with patch('goalboard.models.migration_job.r', mock):
        yield mock


@pytest.fixture
def queue():
    q = MagicMock()
    with patch('goalboard.pipeline.migration_jobs._get_queue', return_value=q):
        yield q


class TestStartMigration:

    def test_enqueues_and_persists(self, job_redis, queue, db_session):
        job = start_migration(requested_by='ops')

        queue.enqueue.assert_called_once()
        assert queue.enqueue.call_args.args[1] == job.id
        assert job_redis.store['migration:active'] == job.id
        row = db_session.get(DbMigrationRun, job.id)
        assert row.status == 'not_started'
        assert row.requested_by == 'ops'

    def test_second_start_rejected_while_active(self, job_redis, queue):
        first = start_migration()
        with pytest.raises(MigrationStateError, match=first.id):
            start_migration()
        assert queue.enqueue.call_count == 1


class TestCancelMigration:

    def test_sets_cancel_flag(self, job_redis, queue):
        job = start_migration()
        cancelled = cancel_migration(job.id)
        assert cancelled.cancel_requested() is True

    def test_unknown_job(self, job_redis):
        assert cancel_migration('missing') is None

    def test_finished_job_not_flagged(self, job_redis):
        job = MigrationJob(status='completed').save()
        cancel_migration(job.id)
        assert job.cancel_requested() is False


class TestRunMigrationJob:

    def test_runs_backfill_and_records_outcome(self, job_redis, queue, db_session, make_snapshot):
        make_snapshot(with_cycle=False)
        make_snapshot(with_cycle=False, representative_id='rep-002')
        job = start_migration(requested_by='ops')

        with patch('goalboard.pipeline.migration_jobs.notify_migration_finished') as notify:
            report = run_migration_job(job.id, batch_size=1)

        assert report['state'] == 'completed'
        saved = json.loads(job_redis.store[f'migration:{job.id}'])
        assert saved['status'] == 'completed'
        assert saved['progress']['records_migrated'] == 2
        assert saved['report']['status']['migrated_records'] == 2
        assert 'migration:active' not in job_redis.store
        db_session.expire_all()
        row = db_session.get(DbMigrationRun, job.id)
        assert row.status == 'completed'
        assert row.records_migrated == 2
        assert row.finished_at is not None
        notify.assert_called_once()

    def test_cancel_flag_stops_job(self, job_redis, queue, make_snapshot):
        make_snapshot(with_cycle=False)
        job = start_migration()
        cancel_migration(job.id)

        report = run_migration_job(job.id)

        assert report['state'] == 'cancelled'
        assert json.loads(job_redis.store[f'migration:{job.id}'])['status'] == 'cancelled'

    def test_crash_marks_failed_and_releases_slot(self, job_redis, queue):
        job = start_migration()

        with patch('goalboard.pipeline.migration_jobs.CycleBackfill.run',
                   side_effect=RuntimeError('worker died')):
            report = run_migration_job(job.id)

        assert report['state'] == 'failed'
        assert 'worker died' in report['status']['errors']
        assert 'migration:active' not in job_redis.store

    def test_unknown_job(self, job_redis):
        assert run_migration_job('nope') is None
