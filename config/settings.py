"""App settings — loaded from environment."""
from __future__ import annotations

import os
from dotenv import load_dotenv

load_dotenv()


def _bool_env(name: str, default: str = "true") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    # API
    API_HOST = os.getenv("API_HOST", "0.0.0.0")
    API_PORT = int(os.getenv("API_PORT", "8000"))

    # Public base URL of this service (used in startup warnings and links)
    API_BASE_URL = os.getenv("API_BASE_URL", "")

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///affiliate.db")
    DATABASE_SSL = _bool_env("DATABASE_SSL", "false")
    DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))
    DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "20"))
    DB_ECHO = _bool_env("DB_ECHO", "false")

    # Outbound partner notifications (POST {apiEndpoint}/webhook/events)
    PARTNER_API_KEY = os.getenv("PARTNER_API_KEY", "")
    PARTNER_NOTIFY_TIMEOUT_SECONDS = float(os.getenv("PARTNER_NOTIFY_TIMEOUT_SECONDS", "5"))
    PARTNER_NOTIFICATIONS_ENABLED = _bool_env("PARTNER_NOTIFICATIONS_ENABLED", "true")
    PARTNER_USER_AGENT = os.getenv("PARTNER_USER_AGENT", "InvestoVise-Affiliate/1.0")

    # Inbound partner conversion webhooks (HMAC-SHA256 of the raw body)
    AFFILIATE_WEBHOOK_SECRET = os.getenv("AFFILIATE_WEBHOOK_SECRET", "")

    # Admin API key (commission reports and payouts)
    ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "")

    # CORS origins (comma-separated, or * for dev)
    CORS_ORIGINS = [
        o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")
    ]

    # Observability
    SENTRY_DSN = os.getenv("SENTRY_DSN", "")
    SENTRY_ENVIRONMENT = os.getenv("SENTRY_ENVIRONMENT", "development")
    SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.1"))

    # Logging
    LOG_FORMAT = os.getenv("LOG_FORMAT", "text")  # "text" or "json"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
