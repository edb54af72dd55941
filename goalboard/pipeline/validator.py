"""
Validator — schema and business-rule checks on raw upload rows.

A row is all-or-nothing: any field error excludes the whole row, and every
error found on it is reported. Other rows are unaffected.
"""
import logging
import math
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from goalboard.config import (
    TEAM_KINDS, TEAM_METRICS, REQUIRED_METRICS, BOUNDED_PERCENT_METRICS, PERCENT_TOLERANCE,
)
from goalboard.errors import FieldError, RowValidationError
from goalboard.pipeline.base import CandidateSnapshot, ValidationOutcome, normalize_metric

logger = logging.getLogger('pipeline.validator')

DATE_FORMATS = ('%Y-%m-%d', '%d/%m/%Y', '%Y/%m/%d')


def resolve_team(value: Any) -> str:
    """Map a team label ("Carteira II", "carteira_ii", "ER") to its team kind."""
    if value is None or not str(value).strip():
        raise FieldError("team is required")
    key = str(value).strip().upper().replace('-', '_').replace(' ', '_')
    while '__' in key:
        key = key.replace('__', '_')
    if key not in TEAM_KINDS:
        raise FieldError(f"unknown team kind '{value}'")
    return key


def parse_report_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip() if value is not None else ''
    if not text:
        raise FieldError("report date is required")
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text[:10], fmt).date()
        except ValueError:
            continue
    raise FieldError(f"invalid report date '{value}'")


def parse_metric(value: Any) -> Optional[float]:
    """
    Parse a metric cell. Returns None when the cell is empty.

    Raises FieldError for anything that is not a finite number; values are
    never coerced to zero.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise FieldError(f"non-numeric value {value!r}")
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
    else:
        text = str(value).strip()
        if not text:
            return None
        text = text.rstrip('%').strip()
        if ',' in text and '.' not in text:
            text = text.replace(',', '.')
        try:
            number = float(text)
        except ValueError:
            raise FieldError(f"non-numeric value {value!r}")
    if not math.isfinite(number):
        raise FieldError(f"non-numeric value {value!r}")
    return normalize_metric(number)


def check_goal(metric: str, value: Optional[float], source: Mapping[str, Any]) -> List[Tuple[str, str]]:
    """
    Consistency checks for a metric reported as a target / current /
    percentage triplet. Returns (field, message) pairs.

    Rows that carry only the percentage are not checked. Target and current
    must be non-negative, and when the target is positive the percentage has
    to agree with current / target * 100 within PERCENT_TOLERANCE points.
    """
    problems, parts = [], {}
    for part in ('target', 'current'):
        field_name = f'{metric}_{part}'
        try:
            number = parse_metric(source.get(field_name))
        except FieldError as e:
            problems.append((field_name, str(e)))
            continue
        if number is None:
            continue
        if number < 0:
            problems.append((field_name, f"{part} must be non-negative, got {number:g}"))
        else:
            parts[part] = number

    if not parts or value is None:
        return problems

    if metric in BOUNDED_PERCENT_METRICS and not 0 <= value <= 100:
        problems.append((metric, f"percentage must be between 0 and 100, got {value:g}"))

    target, current = parts.get('target'), parts.get('current')
    if target and current is not None:
        expected = current / target * 100
        if abs(expected - value) > PERCENT_TOLERANCE:
            problems.append((metric, f"percentage mismatch: expected ~{expected:.1f}%, got {value:g}%"))
    return problems


def _metric_source(raw: Mapping[str, Any]) -> Mapping[str, Any]:
    metrics = raw.get('metrics')
    return metrics if isinstance(metrics, Mapping) else raw


def validate_row(row_number: int, raw: Mapping[str, Any],
                 required_metrics: Dict[str, List[str]]) -> Tuple[Optional[CandidateSnapshot], List[Dict]]:
    errors = []

    def fail(field_name, message):
        errors.append(RowValidationError(row_number, field_name, message).to_dict())

    representative_id = str(raw.get('representative_id') or '').strip()
    if not representative_id:
        fail('representative_id', "representative id is required")

    team = None
    try:
        team = resolve_team(raw.get('team'))
    except FieldError as e:
        fail('team', str(e))

    report_date = None
    try:
        report_date = parse_report_date(raw.get('report_date'))
    except FieldError as e:
        fail('report_date', str(e))

    metrics = {}
    if team is not None:
        source = _metric_source(raw)
        required = required_metrics.get(team, [])
        # Only the team's own metrics are read; anything else is ignored
        for metric in TEAM_METRICS[team]:
            try:
                value = parse_metric(source.get(metric))
            except FieldError as e:
                fail(metric, str(e))
                continue
            for field_name, message in check_goal(metric, value, source):
                fail(field_name, message)
            if value is None:
                if metric in required:
                    fail(metric, f"required for team {team}")
                continue
            metrics[metric] = value

    if errors:
        return None, errors

    name = str(raw.get('representative_name') or '').strip() or representative_id
    return CandidateSnapshot(
        row=row_number,
        representative_id=representative_id,
        representative_name=name,
        team=team,
        report_date=report_date,
        metrics=metrics,
    ), []


def validate_batch(rows: Iterable[Mapping[str, Any]],
                   required_metrics: Dict[str, List[str]] = None) -> ValidationOutcome:
    """
    Validate raw rows. Row numbers in errors are 1-based batch positions.
    """
    required_metrics = REQUIRED_METRICS if required_metrics is None else required_metrics
    outcome = ValidationOutcome()

    for idx, raw in enumerate(rows, 1):
        if not isinstance(raw, Mapping):
            outcome.errors.append(RowValidationError(idx, 'row', "row must be an object").to_dict())
            continue
        candidate, errors = validate_row(idx, raw, required_metrics)
        if candidate is not None:
            outcome.candidates.append(candidate)
        outcome.errors.extend(errors)

    if outcome.errors:
        logger.info(
            "Validation: %d valid, %d errors across %d rows",
            len(outcome.candidates), len(outcome.errors),
            len(outcome.candidates) + len({e['row'] for e in outcome.errors}),
        )
    return outcome
