"""Tests for goalboard.pipeline.ingest — end-to-end report ingestion."""
from datetime import date, datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import select

from goalboard.errors import ResolutionError
from goalboard.models.action_delivery import ActionDelivery
from goalboard.models.metric_snapshot import MetricSnapshot
from goalboard.models.report_upload import ReportUpload
from goalboard.pipeline import ingest
from goalboard.pipeline.dispatcher import ActionDispatcher
from goalboard.pipeline.ingest import ingest_batch, group_by_representative, retry_failed_deliveries
from goalboard.services.gamification import GamificationError


@pytest.fixture
def platform():
    """Mock gamification client that accepts every action."""
    client = MagicMock()
    client.log_action.return_value = {}
    return client


@pytest.fixture
def run(platform):
    def _run(rows, submitted_by='gestor@empresa.com', **kwargs):
        kwargs.setdefault('dispatcher', ActionDispatcher(client=platform, sleep=lambda s: None))
        return ingest_batch(rows, submitted_by=submitted_by, **kwargs)
    return _run


def _payloads(platform):
    return [c.args[0] for c in platform.log_action.call_args_list]


def _snapshots(db_session, representative_id='rep-001'):
    return db_session.scalars(
        select(MetricSnapshot)
        .where(MetricSnapshot.representative_id == representative_id)
        .order_by(MetricSnapshot.id)
    ).all()


# ── Change detection end to end ─────────────────────────────────────────


class TestIngestChanges:
    """Snapshot + diff + dispatch for single representatives."""

    def test_first_report_emits_every_metric(self, run, platform, make_row, db_session):
        result = run([make_row()])

        assert result.processed_count == 1
        assert result.changed_count == 1
        assert result.actions_submitted_count == 3
        assert result.errors == []
        assert sorted(p['actionId'] for p in _payloads(platform)) == [
            'atividade', 'faturamento', 'reais_por_ativo',
        ]
        snapshot = _snapshots(db_session)[0]
        assert snapshot.upload_id == result.upload_id
        assert snapshot.submitted_by == 'gestor@empresa.com'
        assert snapshot.cycle_number == 4

    def test_unchanged_report_is_silent(self, run, platform, make_row, make_snapshot, db_session):
        make_snapshot()

        result = run([make_row()])

        assert result.processed_count == 1
        assert result.changed_count == 0
        assert result.actions_submitted_count == 0
        platform.log_action.assert_not_called()
        # The snapshot is still appended
        assert len(_snapshots(db_session)) == 2

    def test_single_metric_change(self, run, platform, make_row, make_snapshot):
        make_snapshot()

        result = run([make_row(activity='85')])

        assert result.changed_count == 1
        assert result.actions_submitted_count == 1
        assert _payloads(platform) == [
            {'actionId': 'atividade', 'userId': 'rep-001', 'attributes': {'delta': 5.0}},
        ]

    def test_reupload_is_idempotent(self, run, platform, make_row):
        run([make_row(activity='85')])
        platform.log_action.reset_mock()

        second = run([make_row(activity='85')])

        assert second.changed_count == 0
        platform.log_action.assert_not_called()

    def test_rows_for_same_representative_apply_in_order(self, run, platform, make_row, make_snapshot):
        make_snapshot()

        result = run([
            make_row(activity='85'),
            make_row(activity='90'),
        ])

        assert result.processed_count == 2
        assert result.changed_count == 2
        assert [p['attributes']['delta'] for p in _payloads(platform)] == [5.0, 5.0]

    def test_prior_from_earlier_cycle_not_compared(self, run, platform, make_row, make_snapshot):
        make_snapshot(report_date=date(2025, 2, 20),
                      recorded_at=datetime(2025, 2, 20, tzinfo=timezone.utc))

        result = run([make_row()])

        assert result.actions_submitted_count == 3

    def test_diff_across_cycles_when_configured(self, run, platform, make_row, make_snapshot):
        make_snapshot(report_date=date(2025, 2, 20),
                      recorded_at=datetime(2025, 2, 20, tzinfo=timezone.utc))

        with patch('goalboard.pipeline.ingest.INGEST_DIFF_SCOPE', 'all'):
            result = run([make_row()])

        assert result.actions_submitted_count == 0

    def test_new_unchanged_and_changed_representatives(self, run, platform, make_row, make_snapshot):
        make_snapshot(representative_id='rep-b')
        make_snapshot(representative_id='rep-c')

        result = run([
            make_row(representative_id='rep-a'),
            make_row(representative_id='rep-b'),
            make_row(representative_id='rep-c', activity='87', revenue='120'),
        ])

        assert result.processed_count == 3
        assert result.changed_count == 2
        assert result.actions_submitted_count == 3 + 2
        by_user = {}
        for payload in _payloads(platform):
            by_user.setdefault(payload['userId'], []).append(payload)
        assert 'rep-b' not in by_user
        assert sorted(p['attributes']['delta'] for p in by_user['rep-c']) == [7.0, 10.0]

    def test_team_change_uses_new_metric_set(self, run, platform, make_row, make_snapshot):
        make_snapshot()

        result = run([make_row(team='ER', upa='2.5', activity=None)])

        assert _payloads(platform) == [
            {'actionId': 'upa', 'userId': 'rep-001', 'attributes': {'delta': 2.5}},
        ]
        assert result.changed_count == 1


# ── Partial failure ─────────────────────────────────────────────────────


class TestIngestPartialFailure:

    def test_invalid_rows_rejected_valid_rows_processed(self, run, make_row):
        result = run([
            make_row(representative_id='rep-001'),
            make_row(representative_id='rep-002', revenue='lots'),
            make_row(representative_id='', team='NOPE'),
            'not a row',
        ])

        assert result.rows_received == 4
        assert result.rows_rejected == 3
        assert result.processed_count == 1
        rows = [e['row'] for e in result.to_dict()['errors']]
        assert rows == sorted(rows)
        assert set(rows) == {2, 3, 4}

    def test_all_rows_rejected_still_returns_result(self, run):
        result = run([{'representative_id': ''}])
        assert result.processed_count == 0
        assert result.rows_rejected == 1

    def test_empty_batch(self, run):
        result = run([])
        assert result.rows_received == 0
        assert result.errors == []

    def test_dispatch_failure_keeps_snapshot(self, run, platform, make_row, db_session):
        platform.log_action.side_effect = GamificationError('forbidden', status_code=403)

        result = run([make_row()])

        assert result.processed_count == 1
        assert result.changed_count == 1
        assert result.actions_submitted_count == 0
        assert result.actions_failed_count == 3
        assert {e['field'] for e in result.errors} == {'activity', 'revenue_per_asset', 'revenue'}
        assert all(e['row'] == 1 for e in result.errors)
        assert len(_snapshots(db_session)) == 1
        failed = db_session.scalars(select(ActionDelivery)).all()
        assert {d.status for d in failed} == {'failed'}

    def test_dispatch_retries_transient_errors(self, run, platform, make_row):
        platform.log_action.side_effect = [GamificationError('timeout'), {}, {}, {}]

        result = run([make_row()])

        assert result.actions_submitted_count == 3
        assert result.actions_failed_count == 0
        assert platform.log_action.call_count == 4

    def test_resolution_failure_isolated_to_representative(self, run, make_row, db_session):
        real_resolve = ingest.resolve_latest

        def _resolve(session, representative_id, cycle_number=None):
            if representative_id == 'rep-002':
                raise ResolutionError(representative_id, 'latest-state lookup failed: timeout')
            return real_resolve(session, representative_id, cycle_number)

        with patch('goalboard.pipeline.ingest.resolve_latest', side_effect=_resolve):
            result = run([
                make_row(representative_id='rep-001'),
                make_row(representative_id='rep-002'),
                make_row(representative_id='rep-003'),
            ])

        assert result.processed_count == 2
        assert len(result.errors) == 1
        assert result.errors[0]['row'] == 2
        assert result.errors[0]['field'] == 'representative_id'
        assert 'rep-002' in result.errors[0]['message']
        assert _snapshots(db_session, 'rep-002') == []
        assert len(_snapshots(db_session, 'rep-003')) == 1

    def test_resolution_failure_stops_remaining_rows_of_that_representative(self, run, make_row, db_session):
        with patch('goalboard.pipeline.ingest.resolve_latest',
                   side_effect=ResolutionError('rep-001', 'down')):
            result = run([make_row(), make_row(activity='90')])

        assert result.processed_count == 0
        assert len(result.errors) == 1


# ── Bookkeeping ─────────────────────────────────────────────────────────


class TestIngestBookkeeping:

    def test_upload_record_finalized(self, run, make_row, db_session):
        result = run([make_row(), make_row(representative_id='', team='X')], filename='semana.csv')

        upload = db_session.get(ReportUpload, result.upload_id)
        assert upload.status == 'completed'
        assert upload.filename == 'semana.csv'
        assert upload.submitted_by == 'gestor@empresa.com'
        assert upload.rows_received == 2
        assert upload.rows_rejected == 1
        assert upload.processed_count == 1
        assert upload.actions_submitted_count == 3
        assert upload.finished_at is not None
        assert upload.errors == result.to_dict()['errors']

    def test_notification_sent(self, run, make_row):
        with patch('goalboard.pipeline.ingest.notify_upload_complete') as notify:
            result = run([make_row()], submitted_by='ana')
        notify.assert_called_once_with(result, 'ana')

    def test_group_by_representative_preserves_order(self, make_row):
        from goalboard.pipeline.validator import validate_batch
        outcome = validate_batch([
            make_row(representative_id='b'),
            make_row(representative_id='a'),
            make_row(representative_id='b', activity='1'),
        ])
        groups = group_by_representative(outcome.candidates)
        assert list(groups) == ['b', 'a']
        assert [c.row for c in groups['b']] == [1, 3]


# ── Retrying failed deliveries ──────────────────────────────────────────


class TestRetryFailedDeliveries:

    def test_retry_delivers_and_updates_upload(self, run, platform, make_row, db_session):
        platform.log_action.side_effect = [GamificationError('forbidden', status_code=403), {}, {}]
        result = run([make_row()])
        assert result.actions_failed_count == 1
        platform.reset_mock()
        platform.log_action.side_effect = None

        retried = retry_failed_deliveries(
            result.upload_id, dispatcher=ActionDispatcher(client=platform, sleep=lambda s: None),
        )

        assert retried.delivered == 1
        assert platform.log_action.call_count == 1
        assert platform.log_action.call_args.args[0]['actionId'] == 'atividade'
        upload = db_session.get(ReportUpload, result.upload_id)
        assert upload.actions_submitted_count == 3
        assert upload.actions_failed_count == 0

    def test_second_retry_sends_nothing(self, run, platform, make_row):
        platform.log_action.side_effect = [GamificationError('forbidden', status_code=403), {}, {}]
        result = run([make_row()])
        platform.log_action.side_effect = None
        dispatcher = ActionDispatcher(client=platform, sleep=lambda s: None)
        retry_failed_deliveries(result.upload_id, dispatcher=dispatcher)
        platform.reset_mock()

        again = retry_failed_deliveries(result.upload_id, dispatcher=dispatcher)

        assert (again.delivered, again.failed) == (0, 0)
        platform.log_action.assert_not_called()

    def test_unknown_upload(self):
        assert retry_failed_deliveries('missing', dispatcher=MagicMock()) is None
