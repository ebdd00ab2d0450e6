"""
Settings for each ``APP_ENV`` (development, testing, production).

``create_app`` instantiates the selected class, so ProductionConfig can
refuse to start when required environment variables are missing.
"""

import os
import secrets

PROJECT_ROOT = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

LOCAL_DB_URL = "sqlite:///" + os.path.join(PROJECT_ROOT, "instance", "uathub_dev.db")
MEMORY_DB_URL = "sqlite:///:memory:"


def _env_flag(name, default):
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _database_url(fallback=None):
    url = os.getenv("DATABASE_URL")
    if not url:
        return fallback
    # SQLAlchemy only accepts the postgresql:// scheme
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url


class Config:
    DEBUG = False
    TESTING = False
    # per-process fallback; sessions do not survive restarts without SECRET_KEY
    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True, "pool_recycle": 300}

    # limiter backend, in-memory when unset
    REDIS_URL = os.getenv("REDIS_URL")
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # "key:username,key2:username2"
    API_KEYS = os.getenv("API_KEYS", "")
    API_AUTH_ENABLED = os.getenv("API_AUTH_ENABLED", "true")

    # No MAIL_SERVER means update emails report "Email service not configured"
    MAIL_SERVER = os.getenv("MAIL_SERVER")
    MAIL_PORT = int(os.getenv("MAIL_PORT", "587"))
    MAIL_USE_TLS = _env_flag("MAIL_USE_TLS", "true")
    MAIL_USERNAME = os.getenv("MAIL_USERNAME")
    MAIL_PASSWORD = os.getenv("MAIL_PASSWORD")
    MAIL_DEFAULT_SENDER = os.getenv("MAIL_DEFAULT_SENDER", "noreply@testhub.us")

    # link target in session update emails
    UAT_CUSTOM_DOMAIN = os.getenv("UAT_CUSTOM_DOMAIN", "https://testhub.us")


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(LOCAL_DB_URL)
    API_AUTH_ENABLED = os.getenv("API_AUTH_ENABLED", "false")


class TestingConfig(Config):
    """In-memory SQLite, no auth, no limiter, no SMTP.

    Tests identify the internal user with the ``X-User-Id`` header and
    switch MAIL_SERVER on per test when they need the email path.
    """

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", MEMORY_DB_URL)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    API_AUTH_ENABLED = "false"
    RATELIMIT_ENABLED = False
    MAIL_SERVER = None
    UAT_CUSTOM_DOMAIN = "https://uat.example.test"


class ProductionConfig(Config):
    SQLALCHEMY_DATABASE_URI = _database_url()
    # explicit allow-list only
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_timeout": 20,
        "connect_args": {"options": "-c statement_timeout=30000"},
    }

    def __init__(self):
        missing = [name for name in ("DATABASE_URL", "SECRET_KEY") if not os.getenv(name)]
        if missing:
            raise RuntimeError(f"Missing required environment for production: {', '.join(missing)}")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
