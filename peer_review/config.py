"""
Peer Review Integrity & Gating Engine
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])

Every gating threshold is overridable per deployment through the
environment; services fall back to their module defaults when called
outside an app.
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'peer_review_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"


def database_url(env_var: str, default: str | None = None) -> str | None:
    """Read a database URL, accepting the legacy ``postgres://`` scheme."""
    raw = os.getenv(env_var, "")
    if not raw:
        return default
    if raw.startswith("postgres://"):
        return "postgresql://" + raw[len("postgres://"):]
    return raw


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


class Config:
    """Base configuration shared across all environments."""

    SERVICE_NAME = os.getenv("SERVICE_NAME", "peer-review-engine")
    # Ephemeral unless SECRET_KEY is set; ProductionConfig insists on it.
    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
    DEBUG = False
    TESTING = False

    # Logging: "readable" or "json"; None picks json outside debug/testing
    LOG_LEVEL = os.getenv("LOG_LEVEL")
    LOG_FORMAT = os.getenv("LOG_FORMAT")

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True, "pool_recycle": 300}

    # Rate limiting on mutating endpoints
    RATELIMIT_ENABLED = os.getenv("RATELIMIT_ENABLED", "true").lower() == "true"
    RATELIMIT_STORAGE_URI = os.getenv("RATELIMIT_STORAGE_URI", "memory://")

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # ── Conflict of interest ─────────────────────────────────────────────
    COI_RECENT_REVIEW_COOLDOWN_DAYS = _env_int("COI_RECENT_REVIEW_COOLDOWN_DAYS", 730)
    COI_MIN_OVERRIDE_JUSTIFICATION = _env_int("COI_MIN_OVERRIDE_JUSTIFICATION", 50)

    # ── Fieldwork checklist ──────────────────────────────────────────────
    CHECKLIST_MIN_OVERRIDE_JUSTIFICATION = _env_int("CHECKLIST_MIN_OVERRIDE_JUSTIFICATION", 10)

    # ── Corrective action plans ──────────────────────────────────────────
    CAP_WARNING_THRESHOLD_DAYS = _env_int("CAP_WARNING_THRESHOLD_DAYS", 7)
    CAP_CRITICAL_THRESHOLD_DAYS = _env_int("CAP_CRITICAL_THRESHOLD_DAYS", 1)


class DevelopmentConfig(Config):
    """Local runs against SQLite unless DATABASE_URL points elsewhere."""

    DEBUG = True
    SQLALCHEMY_DATABASE_URI = database_url("DATABASE_URL", _SQLITE_DEV)


class TestingConfig(Config):
    """In-memory database, no rate limits."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = database_url("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False


class ProductionConfig(Config):
    """PostgreSQL only; row locks in the gating services rely on it."""

    DEBUG = False
    SQLALCHEMY_DATABASE_URI = database_url("DATABASE_URL")
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    DB_STATEMENT_TIMEOUT_MS = _env_int("DB_STATEMENT_TIMEOUT_MS", 30000)

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": _env_int("DB_POOL_SIZE", 5),
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {"options": f"-c statement_timeout={DB_STATEMENT_TIMEOUT_MS}"},
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
