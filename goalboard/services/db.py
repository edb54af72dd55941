"""
Postgres persistence helpers for job and upload records.

Writes are wrapped in try/except so a failed audit write never takes down
the job that produced it.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from goalboard.database import get_session
from goalboard.models.db_migration_run import DbMigrationRun
from goalboard.models.report_upload import ReportUpload

logger = logging.getLogger('services.db')


def persist_migration_run(job):
    """
    INSERT or UPDATE the migration_runs row for a MigrationJob.

    Called when the job is created and again when it reaches a terminal state.
    """
    session = get_session()
    try:
        row = session.get(DbMigrationRun, job.id)
        if row is None:
            row = DbMigrationRun(
                id=job.id,
                status=job.status,
                requested_by=job.requested_by or None,
                created_at=datetime.fromisoformat(job.created_at),
            )
            session.add(row)

        progress = job.progress or {}
        perf = (job.report or {}).get('performance_metrics', {})
        row.status = job.status
        row.total_records = progress.get('total_records', 0)
        row.records_migrated = progress.get('records_migrated', 0)
        row.records_failed = progress.get('records_failed', 0)
        row.errors = (progress.get('errors') or [])[-100:]
        row.duration_seconds = perf.get('total_duration_seconds')
        row.records_per_second = perf.get('records_per_second')
        if job.status in ('completed', 'failed', 'cancelled'):
            row.finished_at = datetime.now(timezone.utc)

        session.commit()
        logger.info("Persisted migration run %s (status=%s)", job.id[:8], job.status)
    except SQLAlchemyError:
        session.rollback()
        logger.error("Failed to persist migration run %s", job.id[:8], exc_info=True)
    finally:
        session.close()


def list_uploads(limit: int = 20) -> List[Dict]:
    session = get_session()
    try:
        rows = (session.query(ReportUpload)
                .order_by(ReportUpload.created_at.desc()).limit(limit).all())
        return [row.to_dict() for row in rows]
    finally:
        session.close()


def get_upload(upload_id: str) -> Optional[Dict]:
    session = get_session()
    try:
        row = session.get(ReportUpload, upload_id)
        if row is None:
            return None
        data = row.to_dict()
        data['errors'] = row.errors or []
        return data
    finally:
        session.close()
