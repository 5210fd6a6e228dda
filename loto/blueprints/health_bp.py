"""
Health check blueprint.

Endpoints:
    GET /api/health        — simple 200 while the process is up
    GET /api/health/ready  — database and schema guard status; 503 until both are ok
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from loto.core.exceptions import SchemaEvolutionError
from loto.models import db
from loto.services.schema_guard import get_schema_guard

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/health")


@health_bp.route("", methods=["GET"])
def live():
    """Liveness probe — always 200 if the app is running."""
    return jsonify({"status": "ok", "app": "LOTO Work Permit"}), 200


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Readiness check with dependency status."""
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except Exception as exc:
        db.session.rollback()
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check — database failed: %s", exc)

    # ── Workflow columns ─────────────────────────────────────────────
    try:
        guard = get_schema_guard()
        if not guard.ready and overall:
            guard.ensure()
        checks["schema"] = {"status": "ok" if guard.ready else "pending"}
        overall = overall and guard.ready
    except SchemaEvolutionError as exc:
        checks["schema"] = {"status": "error", "detail": str(exc)}
        overall = False

    checks["app"] = {
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "ready" if overall else "degraded",
        "checks": checks,
    }), status_code
