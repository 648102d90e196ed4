"""
Configuration for the field access subscription service.
Production (Railway/Render): uses DATABASE_URL only; fails if missing.
Local: DATABASE_URL or DB_* fallback for backward compatibility.
"""
import os
from urllib.parse import quote_plus


def _is_production():
    """True when running on Railway, Render, or explicit production."""
    return (
        os.environ.get("RENDER") == "true"
        or os.environ.get("RAILWAY_ENVIRONMENT") is not None
        or os.environ.get("FLASK_ENV") == "production"
    )


def _normalize_database_url(url):
    """Convert postgres:// to postgresql+psycopg2:// for SQLAlchemy/psycopg2."""
    if not url:
        return url
    url = url.strip()
    if url.startswith("postgres://"):
        return "postgresql+psycopg2://" + url[11:]
    if url.startswith("postgresql://") and "psycopg2" not in url:
        return "postgresql+psycopg2://" + url[13:]
    return url


def _get_database_uri():
    """Database URI: production = DATABASE_URL only; local = DATABASE_URL or DB_*."""
    url = os.environ.get("DATABASE_URL")
    if _is_production():
        if not url or not url.strip():
            raise RuntimeError(
                "DATABASE_URL is required in production (Railway/Render). "
                "Set it in your service environment variables."
            )
        return _normalize_database_url(url)

    if url and url.strip():
        return _normalize_database_url(url)

    host = os.environ.get("DB_HOST", "localhost")
    port = os.environ.get("DB_PORT", "5432")
    name = os.environ.get("DB_NAME", "fieldaccess")
    user = os.environ.get("DB_USER", "fieldaccess")
    password = os.environ.get("DB_PASSWORD", "")
    if password:
        password = quote_plus(password)
    return f"postgresql+psycopg2://{user}:{password}@{host}:{port}/{name}"


def _int_env(name, default):
    value = os.environ.get(name)
    try:
        return int(value) if value else default
    except ValueError:
        return default


class Config:
    """Base configuration."""
    SECRET_KEY = os.environ.get("SECRET_KEY") or "dev-secret-key-change-in-production"
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

    SQLALCHEMY_DATABASE_URI = _get_database_uri()
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}

    MAIL_SERVER = os.environ.get("MAIL_SERVER")
    MAIL_PORT = int(os.environ.get("MAIL_PORT") or 587)
    MAIL_USE_TLS = os.environ.get("MAIL_USE_TLS", "true").lower() in ("true", "on", "1")
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD")
    MAIL_DEFAULT_SENDER = os.environ.get("MAIL_DEFAULT_SENDER") or os.environ.get("MAIL_USERNAME") or "noreply@fieldaccess.app"

    # Subscription and payment workflow
    PAYMENT_RETRY_DELAY_MINUTES = _int_env("PAYMENT_RETRY_DELAY_MINUTES", 5)
    SCREENSHOT_RETENTION_DAYS = _int_env("SCREENSHOT_RETENTION_DAYS", 2)
    USAGE_HISTORY_RETENTION_DAYS = _int_env("USAGE_HISTORY_RETENTION_DAYS", 90)
    DEFAULT_TRIAL_DAYS = _int_env("DEFAULT_TRIAL_DAYS", 14)
    BULK_ACTION_LIMIT = 100
