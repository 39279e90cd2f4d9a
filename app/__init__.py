"""
Lead SLA Platform
Flask Application Factory.

Usage:
    from app import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config

CLI:
    flask sla-sweep [--workspace-id N]   escalation sweep + breach detection
"""

import logging
import os

import click
from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from app.config import config
from app.models import db
from app.middleware.logging_config import configure_logging
from app.middleware.rate_limiter import init_rate_limits
from app.middleware.timing import init_request_timing

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit: apply per-blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),  # Redis in production, memory for dev
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name])

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from app.models import workspace as _workspace_models      # noqa: F401
    from app.models import flow as _flow_models                # noqa: F401
    from app.models import lead as _lead_models                # noqa: F401
    from app.models import sla as _sla_models                  # noqa: F401
    from app.models import autopilot as _autopilot_models      # noqa: F401
    from app.models import notification as _notification_models  # noqa: F401

    # ── Local dev convenience: create tables for SQLite ──────────────────
    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///") and not app.testing:
        os.makedirs(app.instance_path, exist_ok=True)
        with app.app_context():
            db.create_all()

    # ── Blueprints ───────────────────────────────────────────────────────
    from app.blueprints.health_bp import health_bp
    from app.blueprints.lead_bp import lead_bp
    from app.blueprints.workspace_bp import workspace_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(lead_bp)
    app.register_blueprint(workspace_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("sla-sweep")
    @click.option("--workspace-id", type=int, default=None, help="Limit the sweep to one workspace.")
    def sla_sweep_cmd(workspace_id):
        """Run the escalation sweep, then detect SLA breaches."""
        from app.services.escalation_service import run_escalation_sweep
        from app.services.sla_service import detect_breaches

        counts = run_escalation_sweep(workspace_id)
        breached = detect_breaches(workspace_id)
        logger.info("SLA sweep finished: breached=%s %s", breached, counts, extra={"workspace_id": workspace_id})
        click.echo(f"breached={breached} reminders={counts['reminders']} "
                   f"reassignments={counts['reassignments']} managerAlerts={counts['managerAlerts']}")

    # ── Health check (detailed version at /health/live) ──────────────────
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "Lead SLA Platform"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
