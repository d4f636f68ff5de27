"""Startup validation — catch misconfigurations before the app serves traffic."""
from __future__ import annotations

import logging

from config.settings import settings

logger = logging.getLogger(__name__)


def validate_settings() -> list[str]:
    """Validate configuration. Returns list of warnings (empty = all good)."""
    warnings: list[str] = []
    is_prod = settings.DATABASE_URL and "sqlite" not in settings.DATABASE_URL

    # CORS should not be * in production
    if is_prod and "*" in settings.CORS_ORIGINS:
        warnings.append("CORS_ORIGINS is set to * — restrict in production")

    if not settings.ADMIN_API_KEY:
        warnings.append("ADMIN_API_KEY not set — commission admin endpoints disabled")

    if not settings.AFFILIATE_WEBHOOK_SECRET:
        warnings.append("AFFILIATE_WEBHOOK_SECRET not set — partner webhooks are not signature-checked")

    if settings.PARTNER_NOTIFICATIONS_ENABLED and not settings.PARTNER_API_KEY:
        warnings.append("PARTNER_API_KEY not set — partner notifications will be sent unauthenticated")

    if settings.PARTNER_NOTIFY_TIMEOUT_SECONDS <= 0:
        warnings.append("PARTNER_NOTIFY_TIMEOUT_SECONDS must be positive — partner calls will fail")

    for w in warnings:
        logger.warning("⚠️  %s", w)

    if not warnings:
        logger.info("✅ All startup checks passed")

    return warnings
