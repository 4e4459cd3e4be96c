"""
Member Resource Marketplace
Flask Application Factory.

Usage:
    from marketplace import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from marketplace.config import config
from marketplace.core.failures import StoreUnavailableError
from marketplace.middleware.diagnostics import run_startup_diagnostics
from marketplace.middleware.identity import init_identity_middleware
from marketplace.middleware.logging_config import configure_logging
from marketplace.middleware.rate_limiter import init_rate_limits
from marketplace.middleware.security_headers import init_security_headers
from marketplace.middleware.timing import init_request_timing
from marketplace.models import db
from marketplace.utils.errors import E, api_error

logger = logging.getLogger(__name__)

# ── SQLite: FK enforcement + SAVEPOINT support (global engine events) ────
# pysqlite's implicit transaction handling breaks SAVEPOINT; take over BEGIN.
# IMMEDIATE takes the write lock up front: a deferred transaction holding a
# read lock gets SQLITE_BUSY without waiting when it later tries to write.


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _configure_sqlite(dbapi_conn, connection_record):
    """Enable foreign keys and explicit transaction control for SQLite."""
    if "sqlite" in type(dbapi_conn).__module__:
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


@_sa_event.listens_for(_sa_engine.Engine, "begin")
def _sqlite_begin(conn):
    if conn.dialect.name == "sqlite":
        conn.exec_driver_sql("BEGIN IMMEDIATE")


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit; applied per blueprint
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
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///") and ":memory:" not in \
            app.config["SQLALCHEMY_DATABASE_URI"]:
        os.makedirs(app.instance_path, exist_ok=True)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Security headers ─────────────────────────────────────────────────
    init_security_headers(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Identity middleware (sets g.user_id from the Bearer token) ───────
    init_identity_middleware(app)

    # ── Request guards (input length + Content-Type) ─────────────────────
    app.config.setdefault("MAX_CONTENT_LENGTH", 256 * 1024)

    @app.before_request
    def _guard_request():
        if request.method in ("POST", "PUT", "PATCH") and request.path.startswith("/api/"):
            ct = request.content_type or ""
            if request.data and "json" not in ct:
                return api_error(
                    E.VALIDATION_INVALID, "Content-Type must be application/json", status=415,
                )
        return None

    # ── Import all models so Alembic can detect them ─────────────────────
    from marketplace.models import disclosure as _disclosure_models      # noqa: F401
    from marketplace.models import listing as _listing_models            # noqa: F401
    from marketplace.models import message as _message_models            # noqa: F401
    from marketplace.models import notification as _notification_models  # noqa: F401
    from marketplace.models import organization as _organization_models  # noqa: F401

    # Registers the commit/rollback listeners that publish staged events
    from marketplace.services import relay as _relay  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ───────────────────────
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from marketplace.blueprints.events_bp import events_bp
    from marketplace.blueprints.health_bp import health_bp
    from marketplace.blueprints.listing_bp import listing_bp
    from marketplace.blueprints.organization_bp import organization_bp
    from marketplace.blueprints.thread_bp import thread_bp

    app.register_blueprint(organization_bp)
    app.register_blueprint(listing_bp)
    app.register_blueprint(thread_bp)
    app.register_blueprint(events_bp)
    app.register_blueprint(health_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("migrate-legacy-listings")
    @click.option("--dry-run", is_flag=True, help="Roll back instead of committing.")
    @click.option("--table", default="resources", show_default=True, help="Legacy table name.")
    def migrate_legacy_listings_cmd(dry_run, table):
        """Convert schema-version-1 resource rows into listings."""
        from marketplace.services.listing_migration import migrate_legacy_listings
        try:
            stats = migrate_legacy_listings(dry_run=dry_run, table=table)
        except ValueError as exc:
            raise click.BadParameter(str(exc), param_hint="--table") from exc
        click.echo(
            f"migrated={stats['migrated']} skipped={stats['skipped']} errors={stats['errors']}"
        )

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(StoreUnavailableError)
    def store_unavailable(e):
        logger.error("Store unavailable: %s", e, extra={"path": request.path})
        response, status = api_error(
            E.STORE_UNAVAILABLE, "The datastore is temporarily unavailable",
            details={"operation": e.operation}, extra={"retryable": True},
        )
        response.headers["Retry-After"] = "2"
        return response, status

    @app.errorhandler(404)
    def not_found(e):
        return api_error(E.NOT_FOUND, "Not found", details={"path": request.path})

    @app.errorhandler(405)
    def method_not_allowed(e):
        return api_error(E.VALIDATION_INVALID, "Method not allowed", status=405)

    @app.errorhandler(413)
    def too_large(e):
        return api_error(E.VALIDATION_INVALID, "Request body too large", status=413)

    @app.errorhandler(429)
    def rate_limited(e):
        return api_error(
            E.VALIDATION_INVALID, "Too many requests", status=429,
            extra={"retry_after": e.description},
        )

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")

    # ── Startup diagnostics ──────────────────────────────────────────────
    run_startup_diagnostics(app)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
