"""
Checklist Audit Platform
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'checklist_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


def _database_url(default=None):
    raw = os.getenv("DATABASE_URL", "")
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    return raw.replace("postgres://", "postgresql://", 1) if raw else default


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,   # recycle connections every 5 min
        "pool_timeout": 20,    # wait max 20s for a connection from pool
    }

    # Redis (composition cache + rate limit storage); empty → in-memory
    REDIS_URL = os.getenv("REDIS_URL", "")

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Checklist engine
    GENERIC_FIELD_LABEL = os.getenv("GENERIC_FIELD_LABEL", "Field")
    COMPOSITION_CACHE_TTL = int(os.getenv("COMPOSITION_CACHE_TTL", "300"))

    # AI
    LLM_DEFAULT_CHAT_MODEL = os.getenv("LLM_DEFAULT_CHAT_MODEL", "gemini-2.5-flash")
    AI_ANALYZE_RATE_LIMIT = os.getenv("AI_ANALYZE_RATE_LIMIT", "30 per minute")

    # Attachments
    ATTACHMENT_BACKEND = os.getenv("ATTACHMENT_BACKEND", "local")
    ATTACHMENT_DIR = os.getenv("ATTACHMENT_DIR", os.path.join(basedir, "instance", "attachments"))
    OBJECT_STORE_ENDPOINT = os.getenv("OBJECT_STORE_ENDPOINT")
    OBJECT_STORE_BUCKET = os.getenv("OBJECT_STORE_BUCKET")
    OBJECT_STORE_ACCESS_KEY = os.getenv("OBJECT_STORE_ACCESS_KEY")
    OBJECT_STORE_SECRET_KEY = os.getenv("OBJECT_STORE_SECRET_KEY")
    OBJECT_STORE_USE_PATH_STYLE = os.getenv("OBJECT_STORE_USE_PATH_STYLE", "true").lower() in ("1", "true", "yes")
    OBJECT_STORE_URL_TTL = int(os.getenv("OBJECT_STORE_URL_TTL", "900"))
    AWS_REGION = os.getenv("AWS_REGION", "us-east-1")

    MAX_CONTENT_LENGTH = 10 * 1024 * 1024  # 10 MB (attachment uploads)


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    LOG_LEVEL = os.getenv("LOG_LEVEL", "DEBUG")
    SQLALCHEMY_DATABASE_URI = _database_url(_SQLITE_DEV)


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    # In-memory SQLite runs on a StaticPool, which takes no pool sizing
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    LOG_LEVEL = "WARNING"


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    SQLALCHEMY_DATABASE_URI = _database_url()
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    # Override engine options with PostgreSQL statement timeout
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {
            "options": "-c statement_timeout=30000",  # 30s query timeout
        },
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
