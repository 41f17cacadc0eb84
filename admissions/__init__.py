"""
Admissions Workflow Engine
Flask Application Factory.

Usage:
    from admissions import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask, abort, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from admissions.config import config
from admissions.core.exceptions import StorageError
from admissions.middleware.logging_config import configure_logging
from admissions.middleware.rate_limiter import init_rate_limits
from admissions.middleware.timing import init_request_timing
from admissions.models import db
from admissions.utils.errors import E, api_error

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
    default_limits=[],                     # per-blueprint limits only
    storage_uri=os.getenv("RATELIMIT_STORAGE_URI", "memory://"),
)


def create_app(config_name=None, workflow_service=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.
        workflow_service: Optional pre-built WorkflowService (custom fact /
                     permission providers or sinks). A default one is
                     created otherwise.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())

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

    # ── Request guards (input length + Content-Type) ─────────────────────
    app.config.setdefault("MAX_CONTENT_LENGTH", 2 * 1024 * 1024)  # 2 MB

    @app.before_request
    def _guard_request():
        max_len = app.config.get("MAX_CONTENT_LENGTH")
        if max_len and request.content_length and request.content_length > max_len:
            abort(413, description="Request body too large")
        if request.method in ("POST", "PUT", "PATCH") and request.path.startswith("/api/"):
            ct = request.content_type or ""
            if request.data and "json" not in ct:
                abort(415, description="Content-Type must be application/json")

    # ── Import all models so Alembic can detect them ─────────────────────
    from admissions.models import application as _application_models    # noqa: F401
    from admissions.models import audit as _audit_models                # noqa: F401
    from admissions.models import notification as _notification_models  # noqa: F401
    from admissions.models import role as _role_models                  # noqa: F401
    from admissions.models import workflow as _workflow_models          # noqa: F401

    # ── Local databases: create tables on startup ────────────────────────
    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite"):
        os.makedirs(os.path.join(os.path.dirname(app.root_path), "instance"), exist_ok=True)
        with app.app_context():
            db.create_all()

    # ── Workflow service ─────────────────────────────────────────────────
    from admissions.services.workflow_service import WorkflowService
    app.extensions["workflow_service"] = workflow_service or WorkflowService()

    # ── Blueprints ───────────────────────────────────────────────────────
    from admissions.blueprints.application_bp import application_bp
    from admissions.blueprints.health_bp import health_bp
    from admissions.blueprints.role_bp import role_bp
    from admissions.blueprints.workflow_bp import workflow_bp

    app.register_blueprint(workflow_bp)
    app.register_blueprint(application_bp)
    app.register_blueprint(role_bp)
    app.register_blueprint(health_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-workflow-templates")
    def seed_workflow_templates_cmd():
        """Seed the default undergraduate / graduate / transfer workflows."""
        from admissions.services.templates import seed_default_templates
        count = seed_default_templates(app.extensions["workflow_service"])
        logger.info("Seeded %s new workflow templates.", count)

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(StorageError)
    def storage_error(e):
        logger.error("Storage failure: %s", e, extra={
            "application_id": e.application_id, "workflow_id": e.workflow_id,
        })
        return api_error(E.DATABASE, "A storage error occurred; nothing was changed.")

    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "code": E.NOT_FOUND, "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(413)
    def too_large(e):
        return {"error": e.description}, 413

    @app.errorhandler(415)
    def unsupported_media_type(e):
        return {"error": e.description, "code": E.VALIDATION_INVALID}, 415

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        original = getattr(e, "original_exception", None) or e
        logger.error("500 error: %s", original, exc_info=original)
        return api_error(E.INTERNAL, "Internal server error")

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
