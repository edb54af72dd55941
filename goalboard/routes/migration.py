"""
Migration routes — cycle backfill status, launch, progress, cancel, validate.
"""
import logging
from flask import Blueprint, request, jsonify, session as flask_session
from sqlalchemy.exc import SQLAlchemyError

from goalboard.errors import MigrationStateError
from goalboard.models.migration_job import MigrationJob
from goalboard.pipeline.migration import get_migration_status, validate_migration
from goalboard.pipeline.migration_jobs import start_migration, cancel_migration

logger = logging.getLogger('routes.migration')

bp = Blueprint('migration', __name__)


@bp.route('/api/migration/status')
def migration_status():
    try:
        return jsonify(get_migration_status())
    except SQLAlchemyError as e:
        logger.error("Migration status query failed: %s", e, exc_info=True)
        return jsonify({'error': 'Store unavailable'}), 503


@bp.route('/api/migration/run', methods=['POST'])
def migration_run():
    body = request.get_json(silent=True) or {}
    requested_by = (
        body.get('requested_by')
        or request.headers.get('X-Admin-User')
        or flask_session.get('user', '')
    )
    try:
        job = start_migration(requested_by=requested_by)
    except MigrationStateError as e:
        return jsonify({'error': str(e)}), 409
    return jsonify(job.to_dict()), 202


@bp.route('/api/migration/jobs')
def migration_jobs():
    limit = min(request.args.get('limit', 20, type=int), 100)
    return jsonify({'jobs': [job.to_dict() for job in MigrationJob.list_recent(limit=limit)]})


@bp.route('/api/migration/jobs/<job_id>')
def migration_job(job_id):
    job = MigrationJob.load(job_id)
    if job is None:
        return jsonify({'error': 'Migration job not found'}), 404
    return jsonify(job.to_dict())


@bp.route('/api/migration/jobs/<job_id>/cancel', methods=['POST'])
def migration_cancel(job_id):
    job = cancel_migration(job_id)
    if job is None:
        return jsonify({'error': 'Migration job not found'}), 404
    return jsonify({'ok': True, 'job': job.to_dict()})


@bp.route('/api/migration/validate')
def migration_validate():
    try:
        return jsonify(validate_migration())
    except SQLAlchemyError as e:
        logger.error("Migration validation failed: %s", e, exc_info=True)
        return jsonify({'error': 'Store unavailable'}), 503
