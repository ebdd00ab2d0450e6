"""
UAT Hub: review sessions where clients, collaborators and the agency's
developers work through checklist items, record test runs and discuss them.

    from uathub import create_app
    app = create_app()            # APP_ENV, else "development"
    app = create_app("testing")
"""

import logging
import os

import click
from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as sa_engine, event as sa_event
from sqlalchemy.exc import SQLAlchemyError

from uathub.auth import init_auth
from uathub.config import config
from uathub.middleware.logging_config import configure_logging
from uathub.middleware.rate_limiter import init_rate_limits
from uathub.middleware.timing import init_request_timing
from uathub.models import db

logger = logging.getLogger(__name__)

MAX_BODY_BYTES = 2 * 1024 * 1024

migrate = Migrate()
# limits are attached per blueprint in init_rate_limits
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],
    storage_uri=os.getenv("REDIS_URL") or "memory://",
)


@sa_event.listens_for(sa_engine.Engine, "connect")
def _sqlite_foreign_keys(dbapi_conn, _record):
    # SQLite ignores ON DELETE CASCADE unless asked per connection
    if "sqlite" not in type(dbapi_conn).__module__:
        return
    cur = dbapi_conn.cursor()
    cur.execute("PRAGMA foreign_keys=ON")
    cur.close()


def _ensure_sqlite_dir(uri):
    prefix = "sqlite:///"
    if uri.startswith(prefix) and ":memory:" not in uri:
        os.makedirs(os.path.dirname(uri[len(prefix):]), exist_ok=True)


def _init_cors(app):
    origins = [o.strip() for o in (app.config.get("CORS_ORIGINS") or "").split(",") if o.strip()]
    if not origins or origins == ["*"]:
        CORS(app)
    else:
        CORS(app, origins=origins)


def _create_tables(app):
    # imported for their table definitions
    from uathub.models import auth, notification, uat  # noqa: F401

    with app.app_context():
        try:
            db.create_all()
        except SQLAlchemyError as exc:
            app.logger.warning("Could not create tables at startup: %s", exc)


def _register_app_errors(app):
    def _json(status, message, **extra):
        return {"error": message, **extra}, status

    app.register_error_handler(404, lambda e: _json(404, "Not found", path=request.path))
    app.register_error_handler(405, lambda e: _json(405, "Method not allowed"))
    app.register_error_handler(413, lambda e: _json(413, "Request body too large"))
    app.register_error_handler(
        429, lambda e: _json(429, "Too many requests", retry_after=e.description),
    )

    @app.errorhandler(500)
    def _server_error(e):
        logger.error("Unhandled server error: %s", e, exc_info=True)
        return _json(500, "Internal server error")


def _register_cli(app):
    @app.cli.command("create-user")
    @click.argument("username")
    @click.option("--email", default=None)
    @click.option("--full-name", default=None)
    def create_user(username, email, full_name):
        """Add an internal staff user; pair it with a key in API_KEYS."""
        from uathub.models.auth import User

        user = User(username=username, email=email, full_name=full_name)
        db.session.add(user)
        db.session.commit()
        click.echo(f"user {username} created with id {user.id}")


def create_app(config_name=None):
    """Build the application for ``config_name`` (development/testing/production)."""
    config_name = config_name or os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())
    app.config.setdefault("MAX_CONTENT_LENGTH", MAX_BODY_BYTES)
    _ensure_sqlite_dir(app.config.get("SQLALCHEMY_DATABASE_URI") or "")

    configure_logging(app)

    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    _init_cors(app)

    # timing first so auth rejections still get a request id
    init_request_timing(app)
    init_auth(app)

    _create_tables(app)

    from uathub.blueprints.portal_bp import invite_bp, portal_bp
    from uathub.blueprints.uat_bp import uat_bp

    app.register_blueprint(uat_bp)
    app.register_blueprint(portal_bp)
    app.register_blueprint(invite_bp)

    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "UAT Hub"}

    _register_app_errors(app)
    # needs the blueprints and the health view to exist
    init_rate_limits(app, limiter)
    _register_cli(app)

    return app
