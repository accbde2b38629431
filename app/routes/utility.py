from flask import Blueprint, jsonify

from app.extensions import get_services
from app.services import health as health_service

bp = Blueprint("utility", __name__)


@bp.route("/health")
def health():
    """Return structured health status for downstream services."""
    services = get_services()
    results, overall_healthy = health_service.check_all_services(
        services.kv, services.objects
    )
    status_code = 200 if overall_healthy else 503
    return jsonify(results), status_code


@bp.route("/healthz")
def healthz():
    """Lightweight liveness probe."""
    return "ok", 200
