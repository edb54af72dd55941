"""
Backfill job control — launches CycleBackfill as a background RQ job and
mirrors its progress into a MigrationJob for the API to read.
"""
import logging
from typing import Optional

from goalboard.errors import MigrationStateError
from goalboard.models.migration_job import MigrationJob
from goalboard.pipeline.migration import CycleBackfill, NOT_STARTED, RUNNING, FAILED
from goalboard.services.db import persist_migration_run
from goalboard.services.notifications import notify_migration_finished

logger = logging.getLogger('pipeline.migration_jobs')

JOB_TIMEOUT = 3600 * 6

# ── Lazy RQ queue (no Redis connection at import time) ────────────────────────

_queue = None


def _get_queue():
    global _queue
    if _queue is None:
        from goalboard.extensions import redis_client
        from rq import Queue
        _queue = Queue('backfill', connection=redis_client)
    return _queue


# ── Public API ────────────────────────────────────────────────────────────────

def start_migration(requested_by: str = '') -> MigrationJob:
    """
    Create a MigrationJob and enqueue the backfill.

    Raises MigrationStateError while another backfill holds the active slot.
    """
    job = MigrationJob(requested_by=requested_by)
    if not job.acquire_active():
        raise MigrationStateError(f"backfill {MigrationJob.active_id()} is already active")

    job.save()
    persist_migration_run(job)
    _get_queue().enqueue(run_migration_job, job.id, job_timeout=JOB_TIMEOUT)
    logger.info("Backfill %s queued by %s", job.id[:8], requested_by or 'unknown',
                extra={'job_id': job.id})
    return job


def cancel_migration(job_id: str) -> Optional[MigrationJob]:
    """Flag a job for cancellation. The worker stops before its next batch."""
    job = MigrationJob.load(job_id)
    if job is None:
        return None
    if job.status in (NOT_STARTED, RUNNING):
        job.request_cancel()
        logger.info("Cancel requested for backfill %s", job_id[:8])
    return job


# ── Job runner (enqueued via RQ) ──────────────────────────────────────────────

def run_migration_job(job_id: str, batch_size: int = None) -> Optional[dict]:
    job = MigrationJob.load(job_id)
    if job is None:
        logger.error("Backfill job %s not found", job_id)
        return None

    def _on_progress(progress):
        job.progress = progress.to_dict(max_errors=50)
        job.save()

    backfill = CycleBackfill(
        batch_size=batch_size,
        on_progress=_on_progress,
        cancel_check=job.cancel_requested,
    )

    job.status = RUNNING
    job.save()
    try:
        report = backfill.run()
    except Exception as e:
        logger.error("Backfill %s crashed", job_id[:8], exc_info=True, extra={'job_id': job_id})
        report = backfill.report()
        report['state'] = FAILED
        report['status']['errors'].append(str(e))
    finally:
        job.release_active()

    job.status = report['state']
    job.progress = backfill.progress.to_dict(max_errors=50)
    job.report = {
        'status': dict(report['status'], errors=report['status']['errors'][-50:]),
        'performance_metrics': report['performance_metrics'],
    }
    job.save()
    persist_migration_run(job)
    notify_migration_finished(job)
    return report
