"""
Latest-State Resolver — the most recent snapshot for one representative.

A single ordered, limited query; history is never fetched in full and
nothing is cached between calls.
"""
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from goalboard.errors import ResolutionError
from goalboard.models.metric_snapshot import MetricSnapshot

logger = logging.getLogger('pipeline.resolver')


def latest_snapshot_query(representative_id: str, cycle_number: Optional[int] = None):
    stmt = select(MetricSnapshot).where(MetricSnapshot.representative_id == representative_id)
    if cycle_number is not None:
        stmt = stmt.where(MetricSnapshot.cycle_number == cycle_number)
    # id breaks ties between snapshots recorded in the same instant
    return stmt.order_by(MetricSnapshot.recorded_at.desc(), MetricSnapshot.id.desc()).limit(1)


def resolve_latest(session, representative_id: str,
                   cycle_number: Optional[int] = None) -> Optional[MetricSnapshot]:
    """
    Return the representative's most recent snapshot, optionally within one
    cycle, or None when there is no history.

    Raises ResolutionError when the store cannot be queried.
    """
    try:
        return session.execute(latest_snapshot_query(representative_id, cycle_number)).scalars().first()
    except SQLAlchemyError as e:
        logger.error("Latest-state lookup failed for %s: %s", representative_id, e)
        raise ResolutionError(representative_id, f"latest-state lookup failed: {e}") from e
