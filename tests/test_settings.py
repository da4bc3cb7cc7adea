"""Tests for environment-driven settings."""

import pytest

from rankpilot.platform.settings import Environment, Settings, get_settings, reset_settings

pytestmark = pytest.mark.unit


def test_nested_billing_settings_from_environment(monkeypatch):
    monkeypatch.setenv("BILLING__GRACE_PERIOD_DAYS", "10")
    monkeypatch.setenv("BILLING__EXPIRY_POLICY", "suspend")
    monkeypatch.setenv("BILLING__PRICE_TIERS", '{"price_x": "agency"}')

    settings = Settings()

    assert settings.billing.grace_period_days == 10
    assert settings.billing.expiry_policy == "suspend"
    assert settings.billing.price_tiers == {"price_x": "agency"}


def test_environment_is_case_insensitive(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "PRODUCTION")

    settings = Settings()

    assert settings.environment == Environment.PRODUCTION
    assert settings.is_production
    assert not settings.is_testing


def test_singleton_reset():
    first = get_settings()
    assert get_settings() is first

    reset_settings()
    try:
        assert get_settings() is not first
    finally:
        reset_settings()
