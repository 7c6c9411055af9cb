"""Shared test fixtures for the chat webhook bridge."""

from __future__ import annotations

import asyncio
import time
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.audit.logger import AuditLogger
from src.config import BridgeSettings
from src.models import Acknowledgment, Token

WEBHOOK_TOKEN = "test-webhook-secret"


class FakeTransport:
    """Records frames sent to a client; optionally acks them automatically."""

    def __init__(self, auto_ack: bool = False) -> None:
        self.sent: list[dict[str, Any]] = []
        self.auto_ack = auto_ack
        self.channel: Any = None
        self.connection: Any = None
        self.fail_with: BaseException | None = None

    async def send_json(self, data: Any) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(data)
        if self.auto_ack and "ackId" in data:
            asyncio.get_running_loop().call_soon(self._ack, data)

    def _ack(self, frame: dict[str, Any]) -> None:
        asyncio.ensure_future(self.channel.handle_frame(self.connection, {
            "event": "ack",
            "ackId": frame["ackId"],
            "data": {"ok": True, "deliveryId": frame["data"].get("deliveryId")},
        }))

    def events(self, name: str) -> list[dict[str, Any]]:
        return [f for f in self.sent if f.get("event") == name]


def make_settings(**kwargs: Any) -> BridgeSettings:
    defaults: dict[str, Any] = {
        "webhook_bearer_token": WEBHOOK_TOKEN,
        "provider_auth_url": "https://auth.test/generate-token",
        "provider_refresh_url": "https://auth.test/refresh-token",
        "provider_message_url": "https://api.test/process-message",
        "channel_ref_id": "ref-1",
        "virtual_agent_id": "agent-1",
        "submit_wait_timeout_ms": 200,
        "realtime_ack_timeout_ms": 200,
    }
    defaults.update(kwargs)
    return BridgeSettings(**defaults)


def make_token(value: str = "tok-1", ttl: float = 1800.0, **kwargs: Any) -> Token:
    return Token(value=value, expires_at=time.time() + ttl, **kwargs)


def make_ack(key: str = "conv-1", attempts: int = 1) -> Acknowledgment:
    return Acknowledgment(
        correlation_key=key, status_code=200, body={"status": "accepted"}, attempts=attempts,
    )


def webhook_headers(token: str = WEBHOOK_TOKEN) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}


def mock_gateway(ack: Acknowledgment | None = None) -> MagicMock:
    gateway = MagicMock()
    gateway.submit = AsyncMock(return_value=ack or make_ack())
    return gateway


@pytest.fixture
def mock_audit_logger() -> MagicMock:
    return MagicMock(spec=AuditLogger)


@pytest.fixture
def settings() -> BridgeSettings:
    return make_settings()
