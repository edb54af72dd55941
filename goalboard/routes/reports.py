"""
Report routes — upload a report batch, browse uploads, read a
representative's latest snapshot, re-send failed action logs.
"""
import logging
from flask import Blueprint, request, jsonify, session as flask_session

from goalboard.database import get_session
from goalboard.errors import ResolutionError
from goalboard.pipeline.csv_import import parse_report_csv, CSVImportError
from goalboard.pipeline.ingest import ingest_batch, retry_failed_deliveries
from goalboard.pipeline.resolver import resolve_latest
from goalboard.services.db import list_uploads, get_upload

logger = logging.getLogger('routes.reports')

bp = Blueprint('reports', __name__)


def caller_identity(body=None):
    """Who is submitting: explicit field, then header, then the login session."""
    body = body or {}
    return (
        (body.get('submitted_by') or '').strip()
        or (request.form.get('submitted_by') or '').strip()
        or (request.headers.get('X-Admin-User') or '').strip()
        or flask_session.get('user', '')
    )


@bp.route('/api/reports/upload', methods=['POST'])
def upload_report():
    """
    Ingest a report batch.

    Accepts multipart `file` (CSV, with optional `team` / `report_date`
    form fields for files lacking those columns) or JSON {"rows": [...]}.
    Responds 200 with the batch result even when every row was rejected.
    """
    upload = request.files.get('file')
    if upload is not None:
        body = {}
        filename = upload.filename or 'upload.csv'
        if not filename.lower().endswith('.csv'):
            return jsonify({'error': 'Only .csv files are accepted'}), 400
        try:
            rows = parse_report_csv(
                upload.read(),
                team=request.form.get('team') or None,
                report_date=request.form.get('report_date') or None,
            )
        except CSVImportError as e:
            return jsonify({'error': str(e)}), 400
    else:
        body = request.get_json(silent=True) or {}
        rows = body.get('rows')
        filename = body.get('filename')
        if not isinstance(rows, list):
            return jsonify({'error': "Provide a CSV 'file' or JSON with a 'rows' list"}), 400

    submitted_by = caller_identity(body)
    if not submitted_by:
        return jsonify({'error': 'submitted_by is required'}), 400

    result = ingest_batch(rows, submitted_by=submitted_by, filename=filename)
    return jsonify(result.to_dict()), 200


@bp.route('/api/reports/uploads')
def uploads_list():
    limit = min(request.args.get('limit', 20, type=int), 200)
    return jsonify({'uploads': list_uploads(limit=limit)})


@bp.route('/api/reports/uploads/<upload_id>')
def upload_detail(upload_id):
    upload = get_upload(upload_id)
    if upload is None:
        return jsonify({'error': 'Upload not found'}), 404
    return jsonify(upload)


@bp.route('/api/reports/uploads/<upload_id>/retry', methods=['POST'])
def retry_upload_actions(upload_id):
    """Re-send the upload's failed action logs. Delivered ones are never re-sent."""
    result = retry_failed_deliveries(upload_id)
    if result is None:
        return jsonify({'error': 'Upload not found'}), 404
    return jsonify({
        'upload_id': upload_id,
        'delivered': result.delivered,
        'failed': result.failed,
        'skipped': result.skipped,
        'errors': result.errors,
    })


@bp.route('/api/representatives/<representative_id>/latest')
def latest_snapshot(representative_id):
    """Latest snapshot for a representative, optionally within ?cycle=N."""
    cycle = request.args.get('cycle', type=int)
    session = get_session()
    try:
        snapshot = resolve_latest(session, representative_id, cycle)
        if snapshot is None:
            return jsonify({'error': 'No snapshots for this representative'}), 404
        return jsonify(snapshot.to_dict())
    except ResolutionError as e:
        return jsonify({'error': str(e)}), 503
    finally:
        session.close()
