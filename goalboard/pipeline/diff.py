"""
Diff Engine — per-metric changes between a candidate and the prior snapshot.

Comparison is exact on normalized values. When a representative's team kind
changes between uploads, the new team's metric set drives the comparison:
metrics only the old team reported are ignored, and metrics new to the
representative compare against an absent prior value.
"""
from typing import List, Optional

from goalboard.config import TEAM_METRICS
from goalboard.pipeline.base import CandidateSnapshot, ChangeRecord, normalize_metric


def _prior_value(prior, metric: str) -> Optional[float]:
    if prior is None:
        return None
    value = getattr(prior, metric, None)
    return None if value is None else normalize_metric(value)


def diff_snapshot(candidate: CandidateSnapshot, prior) -> List[ChangeRecord]:
    changes = []
    for metric in TEAM_METRICS[candidate.team]:
        new_value = candidate.metrics.get(metric)
        # An unreported optional metric is not a change
        if new_value is None:
            continue
        previous = _prior_value(prior, metric)
        if previous is not None and previous == new_value:
            continue
        delta = new_value if previous is None else normalize_metric(new_value - previous)
        changes.append(ChangeRecord(
            representative_id=candidate.representative_id,
            metric=metric,
            previous_value=previous,
            new_value=new_value,
            delta=delta,
        ))
    return changes
