"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — simple 200 for load balancers
    GET /api/v1/health/live   — detailed health (database, workflow configuration)
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy.exc import SQLAlchemyError

from app.core.exceptions import ConfigurationError
from app.models import db
from app.services.conversion_rules import get_rule_set
from app.services.gate_registry import get_gate_registry

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe — always 200 if app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Detailed liveness check with dependency status."""
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except SQLAlchemyError as exc:
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check — database failed: %s", exc)

    # ── Workflow configuration ───────────────────────────────────────
    try:
        registry = get_gate_registry()
        checks["workflow_config"] = {
            "status": "ok",
            "path": current_app.config["WORKFLOW_CONFIG_PATH"],
            "entity_types": len(registry.list_entity_types()),
            "conversion_rules": len(get_rule_set().all_rules()),
        }
    except ConfigurationError as exc:
        checks["workflow_config"] = {"status": "error", "detail": str(exc)}
        overall = False

    checks["app"] = {
        "name": "Innovation Workflow Platform",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code
