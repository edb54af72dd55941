"""
Side-Effect Dispatcher — turns ChangeRecords into action-log submissions.

Every change is claimed as an ActionDelivery row before it is sent. The row
is keyed by (upload_id, snapshot_id, metric), so the same change is never
submitted twice in one ingestion run; retries reuse the same ActionLog and
the same row. Failed rows can be re-sent later with retry_failed().

Failures here never roll back the snapshot that produced them. The snapshot
is already committed when dispatch starts.
"""
import logging
import time
from datetime import datetime, timezone
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from goalboard.config import (
    METRIC_ACTION_IDS,
    DISPATCH_MAX_ATTEMPTS, DISPATCH_BACKOFF_SECONDS, DISPATCH_BACKOFF_MAX_SECONDS,
)
from goalboard.errors import DispatchError
from goalboard.models.action_delivery import ActionDelivery
from goalboard.pipeline.base import ActionLog, ChangeRecord, DispatchResult
from goalboard.services.gamification import GamificationClient, GamificationError

logger = logging.getLogger('pipeline.dispatcher')


def build_actions(changes: List[ChangeRecord], upload_id: str, snapshot_id: int) -> List[ActionLog]:
    """One ActionLog per ChangeRecord, via the static metric → action table."""
    return [
        ActionLog(
            upload_id=upload_id,
            snapshot_id=snapshot_id,
            representative_id=change.representative_id,
            metric=change.metric,
            action_id=METRIC_ACTION_IDS[change.metric],
            delta=change.delta,
            previous_value=change.previous_value,
            new_value=change.new_value,
        )
        for change in changes
    ]


def action_from_delivery(delivery: ActionDelivery) -> ActionLog:
    """Rebuild the ActionLog a delivery row was claimed for."""
    return ActionLog(
        upload_id=delivery.upload_id,
        snapshot_id=delivery.snapshot_id,
        representative_id=delivery.representative_id,
        metric=delivery.metric,
        action_id=delivery.action_id,
        delta=delivery.delta,
        previous_value=delivery.previous_value,
        new_value=delivery.new_value,
    )


class ActionDispatcher:
    """
    Submits action logs with bounded retries and exponential backoff.

    Backoff sleeps block only the calling thread; the ingestion orchestrator
    calls dispatch() from the representative's own worker.
    """

    def __init__(self, client: GamificationClient = None,
                 max_attempts: int = None,
                 backoff_seconds: float = None,
                 backoff_max_seconds: float = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.client = client or GamificationClient()
        self.max_attempts = max_attempts or DISPATCH_MAX_ATTEMPTS
        self.backoff_seconds = DISPATCH_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        self.backoff_max_seconds = (
            DISPATCH_BACKOFF_MAX_SECONDS if backoff_max_seconds is None else backoff_max_seconds
        )
        self._sleep = sleep

    def backoff_for(self, attempt: int) -> float:
        """Delay before the attempt after `attempt` (1-based)."""
        return min(self.backoff_seconds * (2 ** (attempt - 1)), self.backoff_max_seconds)

    def submit(self, action: ActionLog) -> int:
        """
        Deliver one action log. Returns the number of attempts used.

        Raises DispatchError once attempts are exhausted or the platform
        rejects the payload outright.
        """
        payload = action.payload()
        last_error = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                self.client.log_action(payload)
                if attempt > 1:
                    logger.info("Action %s for %s delivered on attempt %d",
                                action.action_id, action.representative_id, attempt)
                return attempt
            except GamificationError as e:
                last_error = e
                if not e.retryable:
                    raise DispatchError(str(e), attempts=attempt) from e
                if attempt < self.max_attempts:
                    delay = self.backoff_for(attempt)
                    logger.warning(
                        "Action %s for %s failed (attempt %d/%d), retrying in %.1fs: %s",
                        action.action_id, action.representative_id,
                        attempt, self.max_attempts, delay, e,
                    )
                    self._sleep(delay)
        raise DispatchError(
            f"gave up after {self.max_attempts} attempts: {last_error}",
            attempts=self.max_attempts,
        ) from last_error

    def _claim(self, session, action: ActionLog) -> Optional[ActionDelivery]:
        """Insert the delivery row, or return None if this change was already delivered."""
        existing = session.execute(
            select(ActionDelivery).where(
                ActionDelivery.upload_id == action.upload_id,
                ActionDelivery.snapshot_id == action.snapshot_id,
                ActionDelivery.metric == action.metric,
            )
        ).scalars().first()
        if existing is not None:
            return None if existing.status == 'delivered' else existing

        delivery = ActionDelivery(
            upload_id=action.upload_id,
            snapshot_id=action.snapshot_id,
            representative_id=action.representative_id,
            metric=action.metric,
            action_id=action.action_id,
            previous_value=action.previous_value,
            new_value=action.new_value,
            delta=action.delta,
            status='pending',
            attempts=0,
        )
        session.add(delivery)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.info("Action %s for snapshot %s already claimed", action.metric, action.snapshot_id)
            return None
        return delivery

    def dispatch(self, session, actions: List[ActionLog], row: int = None) -> DispatchResult:
        """Submit each action once; failures are collected, never raised."""
        result = DispatchResult()
        for action in actions:
            delivery = self._claim(session, action)
            if delivery is None:
                result.skipped += 1
                continue

            try:
                attempts = self.submit(action)
                delivery.status = 'delivered'
                delivery.attempts = (delivery.attempts or 0) + attempts
                delivery.delivered_at = datetime.now(timezone.utc)
                delivery.last_error = None
                result.delivered += 1
            except DispatchError as e:
                delivery.status = 'failed'
                delivery.attempts = (delivery.attempts or 0) + e.attempts
                delivery.last_error = str(e)[:500]
                result.failed += 1
                result.errors.append({
                    'row': row,
                    'field': action.metric,
                    'message': f"action log delivery failed: {e}",
                })
                logger.error("Action %s for %s not delivered: %s",
                             action.action_id, action.representative_id, e)
            session.commit()
        return result

    def retry_failed(self, session, upload_id: str) -> DispatchResult:
        """
        Re-submit every failed delivery of one upload with its original payload.

        Delivered and pending rows are not selected, so a change that already
        reached the platform is never sent again.
        """
        failed = session.scalars(
            select(ActionDelivery)
            .where(ActionDelivery.upload_id == upload_id, ActionDelivery.status == 'failed')
            .order_by(ActionDelivery.id)
        ).all()
        if not failed:
            return DispatchResult()
        logger.info("Retrying %d failed action logs for upload %s", len(failed), upload_id[:8])
        return self.dispatch(session, [action_from_delivery(d) for d in failed])
