"""
Dashboard routes — liveness and external service health.
"""
import logging
from flask import Blueprint, jsonify

from goalboard.services.circuit_breaker import get_all_breakers

logger = logging.getLogger('routes.dashboard')

bp = Blueprint('dashboard', __name__)


@bp.route('/health')
def health_check():
    """Liveness check."""
    return jsonify({"status": "healthy"}), 200


@bp.route('/api/health')
def api_health():
    """Circuit breaker state for every external service."""
    services = {name: cb.get_health() for name, cb in get_all_breakers().items()}
    degraded = [name for name, h in services.items() if h['state'] != 'closed']
    return jsonify({
        'status': 'degraded' if degraded else 'ok',
        'degraded': degraded,
        'services': services,
    })


@bp.route('/api/health/<service>/reset', methods=['POST'])
def reset_circuit(service):
    """Manually close one service's circuit breaker."""
    cb = get_all_breakers().get(service)
    if cb is None:
        return jsonify({'ok': False, 'error': f"Unknown service '{service}'"}), 404
    cb.reset()
    logger.info("Circuit for %s reset via API", service)
    return jsonify({'ok': True, 'service': cb.get_health()})
