"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  simple 200 for load balancers
    GET /api/v1/health/live   detailed system health (DB, collaborators, contract)
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy.exc import SQLAlchemyError

from floorflow.models import db
from floorflow.pipeline.endpoint_guard import contract_consistency_errors
from floorflow.pipeline.phase_contract import CONTRACT_VERSION

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")

_COLLABORATOR_KEYS = ("GENERATOR_BASE_URL", "ANALYSIS_BASE_URL", "PROMPT_IMPROVER_BASE_URL")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe: always 200 if app is running."""
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
        logger.error("Health check: database failed: %s", exc)

    # ── Phase contract ───────────────────────────────────────────────
    errors = contract_consistency_errors()
    checks["contract"] = {"status": "ok" if not errors else "error",
                          "version": CONTRACT_VERSION, "errors": errors}
    if errors:
        overall = False

    # ── Collaborators (configuration only; never called from a probe) ─
    checks["collaborators"] = {
        key.removesuffix("_BASE_URL").lower(): "configured" if current_app.config.get(key) else "missing"
        for key in _COLLABORATOR_KEYS
    }

    # ── App info ─────────────────────────────────────────────────────
    checks["app"] = {
        "name": "Floorplan Pipeline Orchestrator",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code
