"""
Ingestion orchestrator — one uploaded report batch, end to end.

  VALIDATE → group by representative → (per representative, in parallel)
      RESOLVE latest → DIFF → WRITE snapshot → DISPATCH action logs

Representatives are independent and run on a bounded thread pool, each
with its own DB session. Rows for the same representative run in order on
one worker, so each row diffs against the one before it.

Partial failure never raises: every rejected row, unreachable store and
undelivered action ends up in IngestResult.errors.
"""
import logging
import uuid
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError

from goalboard.config import INGEST_MAX_WORKERS, INGEST_DIFF_SCOPE
from goalboard.database import get_session
from goalboard.errors import ResolutionError, MigrationRecordError
from goalboard.models.metric_snapshot import MetricSnapshot
from goalboard.models.report_upload import ReportUpload
from goalboard.pipeline.base import CandidateSnapshot, DispatchResult, IngestResult
from goalboard.pipeline.cycles import compute_cycle_info
from goalboard.pipeline.diff import diff_snapshot
from goalboard.pipeline.dispatcher import ActionDispatcher, build_actions
from goalboard.pipeline.resolver import resolve_latest
from goalboard.pipeline.validator import validate_batch
from goalboard.services.notifications import notify_upload_complete

logger = logging.getLogger('pipeline.ingest')


@dataclass
class RepresentativeOutcome:
    representative_id: str
    processed: int = 0
    changed: int = 0
    delivered: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)


def write_snapshot(session, candidate: CandidateSnapshot, upload_id: str,
                   submitted_by: str) -> MetricSnapshot:
    """Append a new snapshot. Raises ResolutionError if the store rejects it."""
    snapshot = MetricSnapshot(
        representative_id=candidate.representative_id,
        representative_name=candidate.representative_name,
        team=candidate.team,
        report_date=candidate.report_date,
        upload_id=upload_id,
        submitted_by=submitted_by,
        recorded_at=datetime.now(timezone.utc),
    )
    for metric, value in candidate.metrics.items():
        setattr(snapshot, metric, value)
    try:
        compute_cycle_info(candidate.report_date).apply_to(snapshot)
    except MigrationRecordError as e:
        logger.warning("Snapshot for %s stored without cycle info: %s",
                       candidate.representative_id, e)

    try:
        session.add(snapshot)
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        raise ResolutionError(candidate.representative_id, f"snapshot write failed: {e}") from e
    return snapshot


def _diff_scope_cycle(candidate: CandidateSnapshot):
    if INGEST_DIFF_SCOPE != 'cycle':
        return None
    try:
        return compute_cycle_info(candidate.report_date).cycle_number
    except MigrationRecordError:
        return None


def process_representative(representative_id: str, candidates: List[CandidateSnapshot],
                           upload_id: str, submitted_by: str,
                           dispatcher: ActionDispatcher) -> RepresentativeOutcome:
    """Resolve, diff, write and dispatch each of one representative's rows in order."""
    outcome = RepresentativeOutcome(representative_id)
    session = get_session()
    try:
        for candidate in candidates:
            try:
                prior = resolve_latest(session, representative_id, _diff_scope_cycle(candidate))
                changes = diff_snapshot(candidate, prior)
                snapshot = write_snapshot(session, candidate, upload_id, submitted_by)
            except ResolutionError as e:
                # Store trouble aborts this representative only
                outcome.errors.append({
                    'row': candidate.row, 'field': 'representative_id', 'message': str(e),
                })
                break

            outcome.processed += 1
            if not changes:
                continue
            outcome.changed += 1

            try:
                result = dispatcher.dispatch(
                    session, build_actions(changes, upload_id, snapshot.id), row=candidate.row,
                )
            except SQLAlchemyError as e:
                session.rollback()
                logger.error("Delivery bookkeeping failed for %s: %s", representative_id, e)
                outcome.errors.append({
                    'row': candidate.row, 'field': 'representative_id',
                    'message': f"representative {representative_id}: delivery bookkeeping failed: {e}",
                })
                break
            outcome.delivered += result.delivered
            outcome.failed += result.failed
            outcome.errors.extend(result.errors)
    finally:
        session.close()
    return outcome


def group_by_representative(candidates: Iterable[CandidateSnapshot]) -> Dict[str, List[CandidateSnapshot]]:
    groups = OrderedDict()
    for candidate in candidates:
        groups.setdefault(candidate.representative_id, []).append(candidate)
    return groups


def _open_upload(upload_id, submitted_by, filename, rows_received):
    session = get_session()
    try:
        session.add(ReportUpload(
            id=upload_id,
            submitted_by=submitted_by,
            filename=filename,
            status='processing',
            rows_received=rows_received,
        ))
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error("Failed to record upload %s: %s", upload_id, e, exc_info=True)
    finally:
        session.close()


def _close_upload(result: IngestResult):
    session = get_session()
    try:
        upload = session.get(ReportUpload, result.upload_id)
        if upload is None:
            return
        upload.status = 'completed'
        upload.rows_rejected = result.rows_rejected
        upload.processed_count = result.processed_count
        upload.changed_count = result.changed_count
        upload.actions_submitted_count = result.actions_submitted_count
        upload.actions_failed_count = result.actions_failed_count
        upload.errors = result.to_dict()['errors']
        upload.finished_at = datetime.now(timezone.utc)
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error("Failed to finalize upload %s: %s", result.upload_id, e, exc_info=True)
    finally:
        session.close()


def ingest_batch(rows: List[Mapping[str, Any]], submitted_by: str, filename: str = None,
                 max_workers: int = None, dispatcher: ActionDispatcher = None,
                 required_metrics: Dict[str, List[str]] = None) -> IngestResult:
    """
    Ingest one report batch on behalf of `submitted_by`.

    Always returns an IngestResult, even when no row succeeds.
    """
    rows = list(rows)
    upload_id = str(uuid.uuid4())
    result = IngestResult(upload_id=upload_id, rows_received=len(rows))
    dispatcher = dispatcher or ActionDispatcher()

    _open_upload(upload_id, submitted_by, filename, len(rows))

    outcome = validate_batch(rows, required_metrics)
    result.errors.extend(outcome.errors)
    result.rows_rejected = len({e['row'] for e in outcome.errors})

    groups = group_by_representative(outcome.candidates)
    logger.info(
        "Upload %s by %s: %d rows, %d valid, %d representatives",
        upload_id[:8], submitted_by, len(rows), len(outcome.candidates), len(groups),
    )

    if groups:
        workers = max(1, min(max_workers or INGEST_MAX_WORKERS, len(groups)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='ingest') as executor:
            future_to_rep = {
                executor.submit(
                    process_representative, rep_id, candidates, upload_id, submitted_by, dispatcher,
                ): rep_id
                for rep_id, candidates in groups.items()
            }
            for future in as_completed(future_to_rep):
                rep_id = future_to_rep[future]
                try:
                    rep = future.result()
                except Exception as e:
                    logger.error("Unexpected failure for representative %s", rep_id, exc_info=True)
                    result.errors.append({
                        'row': groups[rep_id][0].row, 'field': 'representative_id',
                        'message': f"representative {rep_id}: unexpected error: {e}",
                    })
                    continue
                result.processed_count += rep.processed
                result.changed_count += rep.changed
                result.actions_submitted_count += rep.delivered
                result.actions_failed_count += rep.failed
                result.errors.extend(rep.errors)

    logger.info(
        "Upload %s done: processed=%d changed=%d actions=%d failed_actions=%d errors=%d",
        upload_id[:8], result.processed_count, result.changed_count,
        result.actions_submitted_count, result.actions_failed_count, len(result.errors),
        extra={'upload_id': upload_id},
    )

    _close_upload(result)
    notify_upload_complete(result, submitted_by)
    return result


def retry_failed_deliveries(upload_id: str, dispatcher: ActionDispatcher = None) -> Optional[DispatchResult]:
    """
    Re-send an upload's undelivered action logs and update its counters.

    Returns None when the upload is unknown.
    """
    dispatcher = dispatcher or ActionDispatcher()
    session = get_session()
    try:
        upload = session.get(ReportUpload, upload_id)
        if upload is None:
            return None
        result = dispatcher.retry_failed(session, upload_id)
        upload.actions_submitted_count = (upload.actions_submitted_count or 0) + result.delivered
        upload.actions_failed_count = max((upload.actions_failed_count or 0) - result.delivered, 0)
        session.commit()
        logger.info("Upload %s retry: %d delivered, %d still failing",
                    upload_id[:8], result.delivered, result.failed,
                    extra={'upload_id': upload_id})
        return result
    except SQLAlchemyError:
        session.rollback()
        logger.error("Retry of upload %s failed", upload_id, exc_info=True)
        raise
    finally:
        session.close()
