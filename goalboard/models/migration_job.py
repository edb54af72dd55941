"""
MigrationJob — Redis-backed state of one cycle backfill job.

The RQ worker running the backfill is the only writer; the API reads it.
"""
import json
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from goalboard.extensions import redis_client as r


JOB_TTL = 86400 * 7  # 7 days
ACTIVE_KEY = 'migration:active'
ACTIVE_TTL = 3600 * 6


class MigrationJob:
    """
    Keys:
        migration:{id}          → JSON blob of job state
        migration:{id}:cancel   → set when a cancel is requested
        migrations:list         → sorted set of job IDs by creation time
        migration:active        → ID of the job currently allowed to run
    """

    def __init__(self, id: str = None, status: str = 'not_started', requested_by: str = ''):
        self.id = id or str(uuid.uuid4())
        self.status = status
        self.requested_by = requested_by
        self.created_at = datetime.now().isoformat()
        self.updated_at = self.created_at
        self.progress: Dict = {}
        self.report: Dict = {}

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'status': self.status,
            'requested_by': self.requested_by,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
            'progress': self.progress,
            'report': self.report,
            'cancel_requested': self.cancel_requested(),
        }

    def save(self):
        self.updated_at = datetime.now().isoformat()
        data = self.to_dict()
        data.pop('cancel_requested')
        r.setex(f'migration:{self.id}', JOB_TTL, json.dumps(data))
        r.zadd('migrations:list', {self.id: datetime.fromisoformat(self.created_at).timestamp()})
        return self

    # ── Cancellation ──────────────────────────────────────────────────

    def request_cancel(self):
        r.setex(f'migration:{self.id}:cancel', JOB_TTL, '1')

    def cancel_requested(self) -> bool:
        return bool(r.get(f'migration:{self.id}:cancel'))

    # ── Single active job guard ───────────────────────────────────────

    def acquire_active(self) -> bool:
        """Claim the single active-job slot. False if another job holds it."""
        return bool(r.set(ACTIVE_KEY, self.id, nx=True, ex=ACTIVE_TTL))

    def release_active(self):
        if r.get(ACTIVE_KEY) == self.id:
            r.delete(ACTIVE_KEY)

    @staticmethod
    def active_id() -> Optional[str]:
        return r.get(ACTIVE_KEY)

    # ── Loading ───────────────────────────────────────────────────────

    @classmethod
    def _from_dict(cls, d: Dict) -> 'MigrationJob':
        job = cls.__new__(cls)
        job.id = d['id']
        job.status = d.get('status', 'not_started')
        job.requested_by = d.get('requested_by', '')
        job.created_at = d.get('created_at', '')
        job.updated_at = d.get('updated_at', '')
        job.progress = d.get('progress', {})
        job.report = d.get('report', {})
        return job

    @classmethod
    def _from_db_run(cls, db_run) -> 'MigrationJob':
        job = cls.__new__(cls)
        job.id = db_run.id
        job.status = db_run.status
        job.requested_by = db_run.requested_by or ''
        job.created_at = db_run.created_at.isoformat() if db_run.created_at else ''
        job.updated_at = db_run.finished_at.isoformat() if db_run.finished_at else job.created_at
        job.progress = {
            'total_records': db_run.total_records or 0,
            'records_migrated': db_run.records_migrated or 0,
            'records_failed': db_run.records_failed or 0,
            'errors': db_run.errors or [],
        }
        job.report = {
            'performance_metrics': {
                'total_duration_seconds': db_run.duration_seconds,
                'records_per_second': db_run.records_per_second,
            },
        }
        return job

    @classmethod
    def load(cls, job_id: str) -> Optional['MigrationJob']:
        """Load a job from Redis, falling back to the database."""
        data = r.get(f'migration:{job_id}')
        if data:
            return cls._from_dict(json.loads(data))

        from goalboard.database import get_session
        from goalboard.models.db_migration_run import DbMigrationRun
        session = get_session()
        try:
            db_run = session.get(DbMigrationRun, job_id)
            return cls._from_db_run(db_run) if db_run else None
        finally:
            session.close()

    @classmethod
    def list_recent(cls, limit: int = 20) -> List['MigrationJob']:
        job_ids = r.zrevrange('migrations:list', 0, limit - 1)
        if job_ids:
            return [job for job in (cls.load(job_id) for job_id in job_ids) if job]

        from goalboard.database import get_session
        from goalboard.models.db_migration_run import DbMigrationRun
        session = get_session()
        try:
            rows = (session.query(DbMigrationRun)
                    .order_by(DbMigrationRun.created_at.desc()).limit(limit).all())
            return [cls._from_db_run(row) for row in rows]
        finally:
            session.close()
