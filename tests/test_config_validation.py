"""
Unit tests for configuration parsing and startup validation.
"""

import logging

import pytest
from pydantic import ValidationError

from entitlements.config import (
    AuthConfig,
    CORSConfig,
    EntitlementConfig,
    PaddleConfig,
    Settings,
)


@pytest.fixture
def configured_settings() -> Settings:
    return Settings(
        paddle=PaddleConfig(api_key="pdl_live_key", endpoint_secret_key="whsec_live"),
        auth=AuthConfig(session_secret="s" * 40),
    )


@pytest.fixture
def unconfigured_settings() -> Settings:
    return Settings(
        paddle=PaddleConfig(api_key="", endpoint_secret_key=""),
        auth=AuthConfig(session_secret=""),
    )


def test_validate_configuration_quiet_when_configured(configured_settings, caplog):
    with caplog.at_level(logging.WARNING):
        configured_settings.validate_configuration()

    assert not any("not configured" in record.message for record in caplog.records)


def test_validate_configuration_warns_for_each_missing_credential(unconfigured_settings, caplog):
    with caplog.at_level(logging.WARNING):
        unconfigured_settings.validate_configuration()

    messages = [record.message for record in caplog.records]
    assert any("PADDLE_API_KEY not configured" in m for m in messages)
    assert any("PADDLE_ENDPOINT_SECRET_KEY not configured" in m for m in messages)
    assert any("AUTH_SESSION_SECRET not configured" in m for m in messages)


def test_short_session_secret_warns(caplog):
    settings = Settings(
        paddle=PaddleConfig(api_key="pdl_live_key", endpoint_secret_key="whsec_live"),
        auth=AuthConfig(session_secret="short"),
    )

    with caplog.at_level(logging.WARNING):
        settings.validate_configuration()

    assert any("too short" in record.message for record in caplog.records)


def test_sandbox_environment_switches_base_url():
    assert PaddleConfig(environment="sandbox").base_url == "https://sandbox-api.paddle.com"
    assert PaddleConfig(api_url="https://api.paddle.com/").base_url == "https://api.paddle.com"


def test_placeholder_api_key_treated_as_unset():
    config = PaddleConfig(api_key="your-api-key-here")

    assert config.api_key == ""
    assert not config.is_configured


def test_blank_portal_url_is_none():
    assert PaddleConfig(customer_portal_url="   ").customer_portal_url is None


def test_request_timeout_bounds():
    assert PaddleConfig().request_timeout_seconds == 120.0
    with pytest.raises(ValidationError):
        PaddleConfig(request_timeout_seconds=0)


def test_manageable_statuses_parsed():
    config = EntitlementConfig(manageable_statuses="active, trialing ,")

    assert config.manageable_status_set == frozenset({"active", "trialing"})


def test_usage_warning_ratio_bounds():
    with pytest.raises(ValidationError):
        EntitlementConfig(usage_warning_ratio=1.5)


def test_cors_lists():
    config = CORSConfig(allowed_origins="https://a.example, https://b.example", allowed_headers="*")

    assert config.origins_list == ["https://a.example", "https://b.example"]
    assert config.headers_list == ["*"]
    assert "PATCH" in config.methods_list


def test_signature_tolerance_defaults_to_five_minutes(monkeypatch):
    monkeypatch.delenv("PADDLE_SIGNATURE_TOLERANCE_SECONDS", raising=False)
    assert PaddleConfig().signature_tolerance_seconds == 300

    monkeypatch.setenv("PADDLE_SIGNATURE_TOLERANCE_SECONDS", "0")
    assert PaddleConfig().signature_tolerance_seconds == 0


def test_negative_signature_tolerance_rejected():
    with pytest.raises(ValidationError):
        PaddleConfig(signature_tolerance_seconds=-1)
