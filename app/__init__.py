"""
Commitment Ledger
Flask Application Factory.

Usage:
    from app import create_app
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

from app.config import config
from app.models import db
from app.auth import init_auth
from app.middleware.logging_config import configure_logging
from app.middleware.timing import init_request_timing
from app.middleware.security_headers import init_security_headers
from app.middleware.rate_limiter import init_rate_limits
from app.middleware.jwt_auth import init_jwt_middleware

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
    default_limits=[],                     # no global limit, applied per blueprint
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

    # ── Content-Type guard for state-changing API calls ──────────────────
    init_auth(app)

    # ── Security headers ─────────────────────────────────────────────────
    init_security_headers(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── JWT parsing (g.jwt_*) ────────────────────────────────────────────
    init_jwt_middleware(app)

    app.config.setdefault("MAX_CONTENT_LENGTH", 2 * 1024 * 1024)  # 2 MB

    # ── Import all models so Alembic can detect them ─────────────────────
    from app.models import auth as _auth_models                      # noqa: F401
    from app.models import client as _client_models                  # noqa: F401
    from app.models import commitment as _commitment_models          # noqa: F401
    from app.models import change_request as _change_request_models  # noqa: F401
    from app.models import secure_link as _secure_link_models        # noqa: F401
    from app.models import audit as _audit_models                    # noqa: F401
    from app.models import notification as _notification_models      # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from app.blueprints import all_blueprints

    for bp in all_blueprints():
        app.register_blueprint(bp)

    # ── Rate limits (after blueprints so they can be looked up by name) ──
    init_rate_limits(app, limiter)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("create-founder")
    @click.argument("org_name")
    @click.argument("email")
    @click.option("--plan", default="AGENCY", show_default=True)
    def create_founder_cmd(org_name, email, plan):
        """Create an organization with a FOUNDER user and print an access token."""
        from app.models.auth import ROLE_FOUNDER, VALID_PLANS, Organization, User
        from app.services.jwt_service import generate_access_token

        if plan not in VALID_PLANS:
            raise click.BadParameter(f"plan must be one of {sorted(VALID_PLANS)}")
        slug = "-".join(org_name.lower().split())
        org = Organization(name=org_name, slug=slug, plan=plan, contact_email=email)
        db.session.add(org)
        db.session.flush()
        user = User(org_id=org.id, email=email.lower(), full_name=email, role=ROLE_FOUNDER)
        db.session.add(user)
        db.session.commit()
        click.echo(f"Organization #{org.id} ({org.slug}), founder #{user.id}")
        click.echo(generate_access_token(user.id, org.id, user.role))

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "code": "NOT_FOUND", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed", "code": "METHOD_NOT_ALLOWED"}, 405

    @app.errorhandler(413)
    def payload_too_large(e):
        return {"error": "Request body too large", "code": "PAYLOAD_TOO_LARGE"}, 413

    @app.errorhandler(429)
    def rate_limit_exceeded(e):
        return {"error": "Rate limit exceeded", "code": "RATE_LIMITED", "detail": str(e.description)}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error", "code": "INTERNAL"}, 500

    return app
