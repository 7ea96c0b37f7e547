"""
Peer Review Integrity & Gating Engine
Flask Application Factory.

Usage:
    from peer_review import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os
from datetime import date

import click
from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_migrate import Migrate

from peer_review.config import config
from peer_review.models import db
from peer_review.middleware.actor_context import init_actor_context
from peer_review.middleware.logging_config import configure_logging
from peer_review.middleware.rate_limiter import init_rate_limits, rate_limit_key
from peer_review.middleware.timing import init_request_timing
from peer_review.utils.errors import E, api_error

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
    key_func=rate_limit_key,
    default_limits=[],                     # no global limit; applied per blueprint
    storage_uri=os.getenv("RATELIMIT_STORAGE_URI", "memory://"),
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
    config_cls = config[config_name]
    app.config.from_object(config_cls() if config_name == "production" else config_cls)

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

    # ── Request timing + actor resolution ────────────────────────────────
    init_request_timing(app)
    init_actor_context(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from peer_review.models import roster as _roster_models        # noqa: F401
    from peer_review.models import evidence as _evidence_models    # noqa: F401
    from peer_review.models import coi as _coi_models              # noqa: F401
    from peer_review.models import checklist as _checklist_models  # noqa: F401
    from peer_review.models import cap as _cap_models              # noqa: F401
    from peer_review.models import audit as _audit_models          # noqa: F401
    from peer_review.models import notification as _notification_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    if not app.config.get("TESTING"):
        with app.app_context():
            if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///"):
                os.makedirs(app.instance_path, exist_ok=True)
            db.create_all()
            app.logger.info("db.create_all() completed successfully")

    # ── Blueprints ───────────────────────────────────────────────────────
    from peer_review.blueprints.cap_bp import cap_bp
    from peer_review.blueprints.checklist_bp import checklist_bp
    from peer_review.blueprints.coi_bp import coi_bp
    from peer_review.blueprints.health_bp import health_bp

    app.register_blueprint(coi_bp)
    app.register_blueprint(checklist_bp)
    app.register_blueprint(cap_bp)
    app.register_blueprint(health_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    from peer_review.services import scheduled_jobs

    @app.cli.command("run-job")
    @click.argument("name")
    @click.option("--date", "run_date", default=None, help="Run date (YYYY-MM-DD), default today")
    def run_job_cmd(name, run_date):
        """Run a scheduled job once (cap_deadline_escalation, cap_milestone_sweep)."""
        jobs = scheduled_jobs.get_registered_jobs()
        if name not in jobs:
            raise click.BadParameter(f"unknown job; choose from {sorted(jobs)}", param_hint="NAME")
        today = date.fromisoformat(run_date) if run_date else None
        result = scheduled_jobs.run_job(app, name, today=today)
        click.echo(result)

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return api_error(E.NOT_FOUND, "Not found", details={"path": request.path})

    @app.errorhandler(405)
    def method_not_allowed(e):
        return api_error(E.VALIDATION_INVALID, "Method not allowed", status=405)

    @app.errorhandler(429)
    def rate_limited(e):
        return api_error(E.VALIDATION_INVALID, "Too many requests", status=429,
                         details={"retry_after": str(e.description)})

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
