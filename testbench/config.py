"""
AI Analysis Testbench
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'testbench_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

_DEV_SECRET = secrets.token_hex(32)


def _env_float(name, default=None):
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return float(raw)


def _db_url(raw):
    # Heroku-style postgres:// URLs are rejected by SQLAlchemy 2.0
    return raw.replace("postgres://", "postgresql://", 1) if raw else None


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Test execution
    TESTBENCH_MAX_WORKERS = int(os.getenv("TESTBENCH_MAX_WORKERS", "4"))
    TESTBENCH_CASE_TIMEOUT_SECONDS = _env_float("TESTBENCH_CASE_TIMEOUT_SECONDS", 120.0)
    TESTBENCH_RUN_TIMEOUT_SECONDS = _env_float("TESTBENCH_RUN_TIMEOUT_SECONDS", 3600.0)  # 0 disables
    TESTBENCH_STABILITY_BAND_PCT = _env_float("TESTBENCH_STABILITY_BAND_PCT", 1.0)
    TESTBENCH_MIN_CONFIDENCE = _env_float("TESTBENCH_MIN_CONFIDENCE")
    TESTBENCH_FILES_ROOT = os.getenv("TESTBENCH_FILES_ROOT")

    # Analysis service (unset → local stub engine)
    ANALYSIS_ENGINE_URL = os.getenv("ANALYSIS_ENGINE_URL")
    ANALYSIS_ENGINE_API_KEY = os.getenv("ANALYSIS_ENGINE_API_KEY")


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _db_url(os.getenv("DATABASE_URL", "")) or _SQLITE_DEV


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    # In-memory SQLite runs on a StaticPool; pool options do not apply
    SQLALCHEMY_ENGINE_OPTIONS = {}
    ANALYSIS_ENGINE_URL = None
    TESTBENCH_FILES_ROOT = None
    TESTBENCH_MAX_WORKERS = 4
    TESTBENCH_CASE_TIMEOUT_SECONDS = 10.0
    TESTBENCH_RUN_TIMEOUT_SECONDS = 60.0


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    SQLALCHEMY_DATABASE_URI = _db_url(os.getenv("DATABASE_URL", ""))
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
