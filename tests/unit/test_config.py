"""Tests for environment-driven settings."""

from __future__ import annotations

import pytest

from src.config import BridgeSettings

_ENV_VARS = (
    "WEBHOOK_BEARER_TOKEN",
    "PROVIDER_REFRESH_URL",
    "PROVIDER_CHANNEL_REF_ID",
    "PROVIDER_VIRTUAL_AGENT_ID",
    "SUBMIT_WAIT_TIMEOUT_MS",
    "WEBHOOK_REQUIRE_SIGNATURE",
    "WEBHOOK_SIGNING_SECRET",
    "PORT",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WEBHOOK_BEARER_TOKEN", "secret")
    settings = BridgeSettings.from_env()

    assert settings.webhook_bearer_token == "secret"
    assert settings.submit_wait_timeout_ms == 30_000
    assert settings.realtime_ack_timeout_ms == 5_000
    assert settings.port == 3000
    assert settings.channel_headers == {"x-channel": "CHAT"}


def test_missing_bearer_token_is_generated(caplog: pytest.LogCaptureFixture) -> None:
    settings = BridgeSettings.from_env()
    assert settings.webhook_bearer_token.startswith("webhook-secret-")
    assert "WEBHOOK_BEARER_TOKEN not set" in caplog.text


def test_channel_headers_include_identifiers(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PROVIDER_CHANNEL_REF_ID", "ref-1")
    monkeypatch.setenv("PROVIDER_VIRTUAL_AGENT_ID", "agent-1")
    settings = BridgeSettings.from_env()
    assert settings.channel_headers == {
        "x-channel": "CHAT",
        "x-channel-ref-id": "ref-1",
        "x-virtual-agent-id": "agent-1",
    }


def test_empty_refresh_url_disables_refresh(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PROVIDER_REFRESH_URL", "")
    assert BridgeSettings.from_env().provider_refresh_url is None


def test_signature_flags(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WEBHOOK_SIGNING_SECRET", "sign-key")
    monkeypatch.setenv("WEBHOOK_REQUIRE_SIGNATURE", "true")
    settings = BridgeSettings.from_env()
    assert settings.webhook_signing_secret == "sign-key"
    assert settings.require_signature is True


@pytest.mark.parametrize("value", ["abc", "0", "-5"])
def test_invalid_integer_rejected(monkeypatch: pytest.MonkeyPatch, value: str) -> None:
    monkeypatch.setenv("SUBMIT_WAIT_TIMEOUT_MS", value)
    with pytest.raises(ValueError, match="SUBMIT_WAIT_TIMEOUT_MS"):
        BridgeSettings.from_env()
