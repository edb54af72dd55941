"""
Cycle backfill: stamps cycle metadata onto snapshots recorded before cycle
tracking existed.

State machine:

    not_started ──run()──▶ running ──▶ completed | failed | cancelled
         ▲                                         │
         └────────────────── reset() ◀─────────────┘

Records are paged by id in fixed-size batches, one commit per batch. Each
record is written under its own savepoint, so a record that cannot be
computed or whose write is rejected is counted and skipped while the rest of
the batch commits. Losing the store (connection errors, a failed commit)
stops the run as `failed`. Batches already committed stay committed, and
because only records still missing cycle info are selected, a fresh run picks
up exactly where a failed or cancelled one stopped.

Progress is owned by the running loop. Readers get a copy through
`progress`, and observers can subscribe with `on_progress`.
"""
import copy
import logging
import math
import threading
import time
from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timezone
from typing import Callable, Dict, List, Optional

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError, IntegrityError, DataError

from goalboard.config import MIGRATION_BATCH_SIZE, CYCLE_EPOCH, CYCLE_LENGTH_DAYS
from goalboard.database import get_session
from goalboard.errors import MigrationRecordError, MigrationFatalError, MigrationStateError
from goalboard.models.metric_snapshot import MetricSnapshot
from goalboard.pipeline.cycles import compute_cycle_info

logger = logging.getLogger('pipeline.migration')

NOT_STARTED = 'not_started'
RUNNING = 'running'
COMPLETED = 'completed'
FAILED = 'failed'
CANCELLED = 'cancelled'

TERMINAL_STATES = (COMPLETED, FAILED, CANCELLED)

MAX_VALIDATION_ISSUES = 200


@dataclass
class MigrationProgress:
    total_records: int = 0
    current_batch: int = 0
    total_batches: int = 0
    records_migrated: int = 0
    records_failed: int = 0
    errors: List[str] = field(default_factory=list)
    estimated_time_remaining: Optional[float] = None
    records_per_second: float = 0.0
    elapsed_seconds: float = 0.0

    def to_dict(self, max_errors: int = None) -> Dict:
        data = asdict(self)
        if max_errors is not None:
            data['errors'] = data['errors'][-max_errors:]
        return data


class CycleBackfill:
    """
    One backfill job over all snapshots lacking cycle metadata.

    Args:
        batch_size:    records per batch (one commit each)
        epoch:         start date of cycle 1
        cycle_length:  days per cycle
        on_progress:   called with a MigrationProgress copy after every batch
        cancel_check:  extra cancellation source polled between batches,
                       e.g. a Redis flag set from another process
        clock:         monotonic seconds source, for timing and ETA
    """

    def __init__(self, batch_size: int = None, epoch: date = None, cycle_length: int = None,
                 on_progress: Callable[[MigrationProgress], None] = None,
                 cancel_check: Callable[[], bool] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.batch_size = batch_size or MIGRATION_BATCH_SIZE
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")
        self.epoch = epoch or CYCLE_EPOCH
        self.cycle_length = cycle_length or CYCLE_LENGTH_DAYS
        self.on_progress = on_progress
        self.cancel_check = cancel_check
        self.clock = clock

        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._state = NOT_STARTED
        self._progress = MigrationProgress()
        self._duration = 0.0

    # ── Observers ─────────────────────────────────────────────────────

    @property
    def state(self) -> str:
        return self._state

    @property
    def progress(self) -> MigrationProgress:
        """A point-in-time copy; never the live object."""
        with self._lock:
            return copy.deepcopy(self._progress)

    def cancel(self):
        """Request a stop. Honored before the next batch starts."""
        self._cancel.set()

    def cancel_requested(self) -> bool:
        if self._cancel.is_set():
            return True
        return bool(self.cancel_check and self.cancel_check())

    def reset(self):
        """Return a finished job to not_started so it can run again."""
        with self._lock:
            if self._state not in TERMINAL_STATES:
                raise MigrationStateError(f"cannot reset a backfill that is {self._state}")
            self._state = NOT_STARTED
            self._progress = MigrationProgress()
            self._duration = 0.0
        self._cancel.clear()

    # ── Run ───────────────────────────────────────────────────────────

    def run(self) -> Dict:
        with self._lock:
            if self._state != NOT_STARTED:
                raise MigrationStateError(f"cannot start a backfill that is {self._state}")
            self._state = RUNNING

        started = self.clock()
        logger.info("Cycle backfill started (batch_size=%d, epoch=%s, length=%d)",
                    self.batch_size, self.epoch.isoformat(), self.cycle_length)

        session = get_session()
        try:
            ceiling = self._plan(session)
            self._notify()

            last_id, number = 0, 0
            while True:
                page = self._next_page(session, number + 1, last_id, ceiling)
                if not page:
                    self._finish(COMPLETED, started)
                    break
                number += 1
                if self.cancel_requested():
                    logger.info("Cycle backfill cancelled before batch %d/%d",
                                number, self._progress.total_batches)
                    self._finish(CANCELLED, started)
                    break
                self._run_batch(session, number, page)
                last_id = page[-1][0]
                self._record_timing(started)
                self._notify()

        except MigrationFatalError as e:
            logger.error("Cycle backfill failed: %s", e)
            with self._lock:
                self._progress.errors.append(str(e))
            self._finish(FAILED, started)
        finally:
            session.close()

        return self.report()

    def _plan(self, session) -> Optional[int]:
        """Count the pending records and return the highest pending id.

        Records written after this point are left for the next run.
        """
        try:
            total, ceiling = session.execute(
                select(func.count(MetricSnapshot.id), func.max(MetricSnapshot.id))
                .where(MetricSnapshot.cycle_number.is_(None))
            ).one()
        except SQLAlchemyError as e:
            raise MigrationFatalError(f"could not count snapshots to migrate: {e}") from e

        batches = math.ceil(total / self.batch_size)
        with self._lock:
            self._progress.total_records = total
            self._progress.total_batches = batches
        logger.info("Cycle backfill: %d records in %d batches", total, batches)
        return ceiling

    def _next_page(self, session, number: int, last_id: int, ceiling: Optional[int]) -> List:
        """Next batch of pending (id, snapshot) pairs after last_id, in id order.

        Paging on id means a record that failed earlier in this run stays
        behind the cursor and is not picked up again.
        """
        if ceiling is None or last_id >= ceiling:
            return []
        try:
            snapshots = session.scalars(
                select(MetricSnapshot)
                .where(MetricSnapshot.cycle_number.is_(None),
                       MetricSnapshot.id > last_id,
                       MetricSnapshot.id <= ceiling)
                .order_by(MetricSnapshot.id)
                .limit(self.batch_size)
            ).all()
        except SQLAlchemyError as e:
            session.rollback()
            raise MigrationFatalError(f"batch {number}: could not load snapshots: {e}") from e
        return [(s.id, s) for s in snapshots]

    def _run_batch(self, session, number: int, page: List):
        migrated, failures = 0, []
        now = datetime.now(timezone.utc)
        for snapshot_id, snapshot in page:
            label = f"snapshot {snapshot_id} ({snapshot.representative_id})"
            try:
                info = compute_cycle_info(snapshot.report_date, self.epoch, self.cycle_length)
            except MigrationRecordError as e:
                failures.append(f"{label}: {e}")
                continue

            # One savepoint per record: a rejected write only loses that record
            try:
                with session.begin_nested():
                    info.apply_to(snapshot)
                    snapshot.updated_at = now
            except (IntegrityError, DataError) as e:
                failures.append(f"{label}: write rejected: {e.orig}")
                continue
            except SQLAlchemyError as e:
                session.rollback()
                raise MigrationFatalError(f"batch {number}: write failed for {label}: {e}") from e
            migrated += 1

        try:
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise MigrationFatalError(f"batch {number}: commit failed: {e}") from e

        with self._lock:
            self._progress.current_batch = number
            self._progress.records_migrated += migrated
            self._progress.records_failed += len(failures)
            self._progress.errors.extend(failures)

        logger.info("Batch %d/%d: %d migrated, %d failed",
                    number, self._progress.total_batches, migrated, len(failures),
                    extra={'batch': number})
        for message in failures:
            logger.warning("Backfill record failure: %s", message)

    def _record_timing(self, started: float):
        elapsed = max(self.clock() - started, 0.0)
        with self._lock:
            p = self._progress
            attempted = min(p.current_batch * self.batch_size, p.total_records)
            remaining = p.total_records - attempted
            p.elapsed_seconds = round(elapsed, 3)
            p.records_per_second = round(attempted / elapsed, 2) if elapsed > 0 else 0.0
            if remaining == 0:
                p.estimated_time_remaining = 0.0
            elif p.records_per_second > 0:
                p.estimated_time_remaining = round(remaining / p.records_per_second, 1)
            else:
                p.estimated_time_remaining = None

    def _finish(self, state: str, started: float):
        with self._lock:
            self._state = state
            self._duration = max(self.clock() - started, 0.0)
            if state == COMPLETED:
                self._progress.estimated_time_remaining = 0.0
        logger.info("Cycle backfill %s: %d migrated, %d failed of %d",
                    state, self._progress.records_migrated,
                    self._progress.records_failed, self._progress.total_records)
        self._notify()

    def _notify(self):
        if self.on_progress is None:
            return
        try:
            self.on_progress(self.progress)
        except Exception:
            logger.error("Backfill progress observer failed", exc_info=True)

    def report(self) -> Dict:
        """Final (or current) report of this job."""
        progress = self.progress
        with self._lock:
            state, duration = self._state, self._duration
        attempted_all = state == COMPLETED
        return {
            'state': state,
            'status': {
                'is_complete': attempted_all,
                'total_records': progress.total_records,
                'migrated_records': progress.records_migrated,
                'failed_records': progress.records_failed,
                'errors': list(progress.errors),
            },
            'performance_metrics': {
                'total_duration_seconds': round(duration, 3),
                'records_per_second': (
                    round((progress.records_migrated + progress.records_failed) / duration, 2)
                    if duration > 0 else progress.records_per_second
                ),
                'average_batch_seconds': (
                    round(duration / progress.current_batch, 3) if progress.current_batch else 0.0
                ),
            },
            'progress': progress.to_dict(),
        }


# ── Read-only queries ─────────────────────────────────────────────────────────

def get_migration_status(session=None) -> Dict:
    """How many snapshots still need cycle metadata."""
    own = session is None
    session = session or get_session()
    try:
        total = session.scalar(select(func.count(MetricSnapshot.id))) or 0
        missing = session.scalar(
            select(func.count(MetricSnapshot.id)).where(MetricSnapshot.cycle_number.is_(None))
        ) or 0
        return {
            'needs_migration': missing > 0,
            'records_without_cycle_info': missing,
            'records_with_cycle_info': total - missing,
            'total_records': total,
        }
    finally:
        if own:
            session.close()


def _check_snapshot(s: MetricSnapshot, epoch: date, length: int) -> List[str]:
    label = f"snapshot {s.id} ({s.representative_id}, {s.report_date})"
    if not s.has_cycle_info:
        return [f"{label}: missing cycle info"]

    issues = []
    if s.cycle_number < 1:
        issues.append(f"{label}: cycle number {s.cycle_number} is not positive")
    if s.cycle_start_date is None or s.cycle_end_date is None:
        issues.append(f"{label}: missing cycle dates")
        return issues
    if s.cycle_start_date > s.cycle_end_date:
        issues.append(f"{label}: cycle starts after it ends")
    if s.total_cycle_days and (s.cycle_end_date - s.cycle_start_date).days + 1 != s.total_cycle_days:
        issues.append(f"{label}: cycle span disagrees with total_cycle_days={s.total_cycle_days}")
    if s.day_in_cycle is None or not s.total_cycle_days or not 1 <= s.day_in_cycle <= s.total_cycle_days:
        issues.append(f"{label}: day_in_cycle={s.day_in_cycle} outside 1..{s.total_cycle_days}")
    if not s.cycle_start_date <= s.report_date <= s.cycle_end_date:
        issues.append(f"{label}: report date outside its cycle window")
    try:
        expected = compute_cycle_info(s.report_date, epoch, length)
        if expected.cycle_number != s.cycle_number:
            issues.append(f"{label}: cycle {s.cycle_number} but calendar says {expected.cycle_number}")
    except MigrationRecordError as e:
        issues.append(f"{label}: {e}")
    return issues


def validate_migration(session=None, epoch: date = None, cycle_length: int = None) -> Dict:
    """
    Read-only consistency pass over every snapshot's cycle metadata.

    Streams rows so memory stays flat on large tables.
    """
    epoch = epoch or CYCLE_EPOCH
    cycle_length = cycle_length or CYCLE_LENGTH_DAYS
    own = session is None
    session = session or get_session()
    try:
        issues = []
        issue_count = 0
        total = with_cycles = 0
        stmt = select(MetricSnapshot).order_by(MetricSnapshot.id).execution_options(yield_per=500)
        for snapshot in session.scalars(stmt):
            total += 1
            if snapshot.has_cycle_info:
                with_cycles += 1
            found = _check_snapshot(snapshot, epoch, cycle_length)
            issue_count += len(found)
            room = MAX_VALIDATION_ISSUES - len(issues)
            if room > 0:
                issues.extend(found[:room])

        unique_cycles = session.scalar(
            select(func.count(func.distinct(MetricSnapshot.cycle_number)))
            .where(MetricSnapshot.cycle_number.is_not(None))
        ) or 0
        representatives = session.scalar(
            select(func.count(func.distinct(MetricSnapshot.representative_id)))
        ) or 0

        return {
            'is_valid': issue_count == 0,
            'issue_count': issue_count,
            'issues': issues,
            'statistics': {
                'total_records': total,
                'records_with_cycle_info': with_cycles,
                'records_without_cycle_info': total - with_cycles,
                'unique_cycles': unique_cycles,
                'representatives_with_history': representatives,
            },
        }
    finally:
        if own:
            session.close()
