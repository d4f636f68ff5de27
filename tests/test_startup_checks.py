"""Tests for startup configuration validation."""
from config.settings import settings
from src.startup_checks import validate_settings


def test_warns_about_missing_secrets(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_API_KEY", "")
    monkeypatch.setattr(settings, "AFFILIATE_WEBHOOK_SECRET", "")
    monkeypatch.setattr(settings, "PARTNER_NOTIFICATIONS_ENABLED", True)
    monkeypatch.setattr(settings, "PARTNER_API_KEY", "")
    warnings = validate_settings()
    assert any("ADMIN_API_KEY" in w for w in warnings)
    assert any("AFFILIATE_WEBHOOK_SECRET" in w for w in warnings)
    assert any("PARTNER_API_KEY" in w for w in warnings)


def test_wildcard_cors_in_production(monkeypatch):
    monkeypatch.setattr(settings, "DATABASE_URL", "postgresql://db/affiliate")
    monkeypatch.setattr(settings, "CORS_ORIGINS", ["*"])
    assert any("CORS_ORIGINS" in w for w in validate_settings())


def test_clean_config(monkeypatch):
    monkeypatch.setattr(settings, "DATABASE_URL", "postgresql://db/affiliate")
    monkeypatch.setattr(settings, "CORS_ORIGINS", ["https://investovise.example"])
    monkeypatch.setattr(settings, "ADMIN_API_KEY", "k")
    monkeypatch.setattr(settings, "AFFILIATE_WEBHOOK_SECRET", "s")
    monkeypatch.setattr(settings, "PARTNER_API_KEY", "p")
    monkeypatch.setattr(settings, "PARTNER_NOTIFY_TIMEOUT_SECONDS", 5.0)
    assert validate_settings() == []
