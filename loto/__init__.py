"""
LOTO Work Permit service
Flask Application Factory.

Usage:
    from loto import create_app
    app = create_app()           # defaults to APP_ENV, else "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask, abort, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from sqlalchemy import event as _sa_event

from loto.config import config
from loto.core.exceptions import SchemaEvolutionError
from loto.middleware.jwt_auth import init_jwt_middleware
from loto.middleware.logging_config import configure_logging
from loto.middleware.rate_limiter import init_rate_limits
from loto.middleware.timing import init_request_timing
from loto.models import db
from loto.services.schema_guard import SchemaGuard, get_schema_guard
from loto.utils.errors import E, api_error

logger = logging.getLogger(__name__)

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit — apply per-blueprint
    storage_uri=os.getenv("REDIS_URL") or "memory://",  # Redis in production, memory for dev
)


def _serialize_sqlite_writes(engine):
    """Open every transaction on a file-backed SQLite database with BEGIN IMMEDIATE.

    SQLite ignores FOR UPDATE and pysqlite defers BEGIN to the first write.
    In-memory databases are one shared connection and are left alone.
    """
    if engine.dialect.name != "sqlite" or engine.url.database in (None, "", ":memory:"):
        return False

    @_sa_event.listens_for(engine, "connect")
    def _manual_transactions(dbapi_conn, connection_record):
        dbapi_conn.isolation_level = None

    @_sa_event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return True


def _prepare_database(app, guard):
    """Create missing tables, then make sure the workflow columns exist.

    Failures are logged, not raised: the app still starts, /api/health/ready
    reports the problem and every permit operation retries the guard.
    """
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)
            return

        try:
            guard.ensure()
        except SchemaEvolutionError as e:
            app.logger.warning("Workflow column check failed: %s", e)


def _register_cli(app):
    @app.cli.command("ensure-schema")
    def ensure_schema_cmd():
        """Add any missing workflow columns to the permit table."""
        added = get_schema_guard().ensure()
        if added:
            click.echo(f"Added columns: {', '.join(added)}")
        else:
            click.echo("Workflow columns already present.")

    @app.cli.command("issue-token")
    @click.argument("username")
    @click.argument("role")
    @click.option("--form", "forms", multiple=True, help="Form name to grant (repeatable).")
    @click.option("--expires", type=int, default=None, help="Lifetime in seconds.")
    def issue_token_cmd(username, role, forms, expires):
        """Mint a bearer token for local testing."""
        from loto.services.jwt_service import generate_access_token
        click.echo(generate_access_token(username, role, forms=list(forms), expires_in=expires))


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
    app.config.from_object(config[config_name]())
    os.makedirs(app.instance_path, exist_ok=True)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    with app.app_context():
        _serialize_sqlite_writes(db.engine)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Caller identity (fail-open bearer token) ─────────────────────────
    init_jwt_middleware(app)

    # ── Request guards (input length + Content-Type) ─────────────────────
    @app.before_request
    def _guard_request():
        max_len = app.config.get("MAX_CONTENT_LENGTH")
        if max_len and request.content_length and request.content_length > max_len:
            abort(413, description="Request body too large")
        if request.method in ("POST", "PUT", "PATCH") and request.path.startswith("/api/"):
            ct = request.content_type or ""
            if request.get_data(cache=True) and "json" not in ct:
                abort(415, description="Content-Type must be application/json")

    # ── Schema: tables + workflow columns ────────────────────────────────
    from loto.models import permit as _permit_models  # noqa: F401

    guard = SchemaGuard()
    guard.init_app(app)
    _prepare_database(app, guard)

    # ── Blueprints ───────────────────────────────────────────────────────
    from loto.blueprints.health_bp import health_bp
    from loto.blueprints.permit_bp import permit_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(permit_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    _register_cli(app)

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "code": E.NOT_FOUND, "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(413)
    def too_large(e):
        return {"error": "Request body too large"}, 413

    @app.errorhandler(415)
    def unsupported_media(e):
        return api_error(E.UNSUPPORTED_MEDIA, e.description)

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
