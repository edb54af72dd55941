"""
Pipeline data contracts.

Validated rows flow through the pipeline as CandidateSnapshots. The diff
engine turns each one into ChangeRecords, the dispatcher turns those into
ActionLogs, and the orchestrator folds everything into an IngestResult.
"""
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional, Any

from goalboard.config import METRIC_PRECISION


def normalize_metric(value: float) -> float:
    """Canonical numeric form used for storage and exact comparison."""
    # + 0.0 folds -0.0 into 0.0
    return round(float(value), METRIC_PRECISION) + 0.0


@dataclass
class CandidateSnapshot:
    """A validated upload row, not yet persisted."""
    row: int
    representative_id: str
    representative_name: str
    team: str
    report_date: date
    metrics: Dict[str, float] = field(default_factory=dict)


@dataclass
class ChangeRecord:
    """One metric that differs from the representative's latest snapshot."""
    representative_id: str
    metric: str
    previous_value: Optional[float]
    new_value: float
    delta: float


@dataclass
class ActionLog:
    """Payload for one action-log submission on the gamification platform."""
    upload_id: str
    snapshot_id: int
    representative_id: str
    metric: str
    action_id: str
    delta: float
    previous_value: Optional[float] = None
    new_value: float = 0.0

    def payload(self) -> Dict[str, Any]:
        return {
            'actionId': self.action_id,
            'userId': self.representative_id,
            'attributes': {'delta': self.delta},
        }


@dataclass
class ValidationOutcome:
    candidates: List[CandidateSnapshot] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class DispatchResult:
    """Outcome of dispatching one snapshot's changes."""
    delivered: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class IngestResult:
    """Batch-level outcome returned to the uploader."""
    upload_id: str
    rows_received: int = 0
    rows_rejected: int = 0
    processed_count: int = 0
    changed_count: int = 0
    actions_submitted_count: int = 0
    actions_failed_count: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'upload_id': self.upload_id,
            'rows_received': self.rows_received,
            'rows_rejected': self.rows_rejected,
            'processed_count': self.processed_count,
            'changed_count': self.changed_count,
            'actions_submitted_count': self.actions_submitted_count,
            'actions_failed_count': self.actions_failed_count,
            'errors': sorted(self.errors, key=lambda e: (e.get('row') or 0, e.get('field') or '')),
        }
