"""
Health check blueprint.

Endpoints:
    GET /api/v1/health        — status + database check
    GET /api/v1/health/ready  — simple 200 for load balancers
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy.exc import SQLAlchemyError

from admissions.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("", methods=["GET"])
def health():
    """Liveness with a database round trip."""
    checks = {}
    overall = True

    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except SQLAlchemyError as exc:
        db.session.rollback()
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check — database failed: %s", exc)

    checks["app"] = {
        "name": "Admissions Workflow Engine",
        "testing": current_app.testing,
        "auto_advance": bool(current_app.config.get("WORKFLOW_AUTO_ADVANCE")),
    }
    return jsonify({"status": "ok" if overall else "degraded", "checks": checks}), 200 if overall else 503


@health_bp.route("/ready", methods=["GET"])
def ready():
    return jsonify({"status": "ok"}), 200
