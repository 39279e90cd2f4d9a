"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready - simple 200 for load balancers
    GET /api/v1/health/live  - dependency status (DB, chat-completion provider)
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from app.ai.gateway import LLMGateway
from app.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Readiness check: always 200 if app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Liveness check with dependency status."""
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except Exception as exc:
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check: database failed: %s", exc)

    # ── Chat completion (optional, autopilot falls back to rules) ────
    gateway = LLMGateway(model=current_app.config.get("OPENAI_MODEL"))
    checks["llm"] = {
        "status": "configured" if gateway.available else "fallback_only",
        "model": gateway.model,
    }

    checks["app"] = {
        "name": "Lead SLA Platform",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code
