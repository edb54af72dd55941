"""
Flask application factory.

Creates and configures the Flask app, registers all blueprints.
"""
import os
from flask import Flask, request, session, redirect, jsonify


def create_app():
    """Create and configure the Flask application."""
    from goalboard.logging_config import configure_logging
    from goalboard.config import DASHBOARD_PASSWORD, MAX_UPLOAD_BYTES

    app = Flask(__name__)

    configure_logging(app)

    app.secret_key = os.getenv('SECRET_KEY', 'dev-secret-change-me')
    app.config['MAX_CONTENT_LENGTH'] = MAX_UPLOAD_BYTES

    # ── Simple password auth ────────────────────────────────────────────
    OPEN_PATHS = {'/health', '/login'}

    @app.before_request
    def require_login():
        if not DASHBOARD_PASSWORD:
            return  # No password set: open access (local dev)
        if request.path in OPEN_PATHS or session.get('authenticated'):
            return
        return jsonify({'error': 'Authentication required'}), 401

    @app.route('/login', methods=['POST'])
    def login():
        body = request.get_json(silent=True) or request.form
        if DASHBOARD_PASSWORD and body.get('password') == DASHBOARD_PASSWORD:
            session['authenticated'] = True
            session['user'] = (body.get('user') or 'admin').strip()
            return jsonify({'ok': True, 'user': session['user']})
        return jsonify({'ok': False, 'error': 'Wrong password'}), 401

    @app.route('/logout', methods=['POST'])
    def logout():
        session.clear()
        return redirect('/health')

    @app.errorhandler(413)
    def too_large(e):
        return jsonify({'error': f'File exceeds {MAX_UPLOAD_BYTES // (1024 * 1024)} MB limit'}), 413

    # Register blueprints
    from goalboard.routes.dashboard import bp as dashboard_bp
    from goalboard.routes.reports import bp as reports_bp
    from goalboard.routes.migration import bp as migration_bp

    app.register_blueprint(dashboard_bp)
    app.register_blueprint(reports_bp)
    app.register_blueprint(migration_bp)

    # Initialize circuit breakers for external services
    from goalboard.extensions import redis_client
    from goalboard.services.circuit_breaker import init_breakers
    init_breakers(redis_client)

    # Import models so Base.metadata knows about them.
    # Schema is managed by Alembic; no create_all() here.
    import importlib
    importlib.import_module('goalboard.models.metric_snapshot')
    importlib.import_module('goalboard.models.report_upload')
    importlib.import_module('goalboard.models.action_delivery')
    importlib.import_module('goalboard.models.db_migration_run')

    return app
