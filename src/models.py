"""Shared Pydantic data models for the chat webhook bridge."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

# --- Enums ---


class AuditEventType(str, Enum):
    WEBHOOK_AUTH_FAILURE = "webhook_auth_failure"
    WEBHOOK_RECEIVED = "webhook_received"
    ROUTING_MISS = "routing_miss"
    DELIVERY_ACKED = "delivery_acked"
    DELIVERY_FAILED = "delivery_failed"
    UPSTREAM_ERROR = "upstream_error"
    TOKEN_REFRESH = "token_refresh"


class RiskLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


class DeliveryStatus(str, Enum):
    ACKED = "acked"
    TIMEOUT = "timeout"
    NOT_CONNECTED = "not_connected"
    CLOSED = "closed"


# --- Provider Models ---


class Token(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: str = Field(min_length=1)
    expires_at: float  # epoch seconds
    refresh_token: str | None = None

    def is_valid(self, now: float, lead_seconds: float = 0.0) -> bool:
        return now < self.expires_at - lead_seconds


class Acknowledgment(BaseModel):
    model_config = ConfigDict(frozen=True)

    correlation_key: str
    status_code: int
    body: dict[str, Any]
    attempts: int = Field(ge=1)


# --- HTTP Models ---


class SubmitRequest(BaseModel):
    """Body of ``POST /message``."""

    model_config = ConfigDict(populate_by_name=True)

    conversation_id: str | None = Field(default=None, alias="conversationId")
    text: str | None = Field(default=None, min_length=1)
    client_connection_id: str | None = Field(default=None, alias="clientConnectionId")
    wait_for_webhook: bool = Field(default=False, alias="waitForWebhook")
    timeout_ms: int | None = Field(default=None, ge=1, alias="timeoutMs")
    message_data: dict[str, Any] | None = Field(default=None, alias="messageData")

    @model_validator(mode="after")
    def _require_content(self) -> SubmitRequest:
        # A full provider message may stand in for the text
        if self.text is None and self.message_data is None:
            raise ValueError("text or messageData is required")
        return self


# --- Delivery Models ---


class DeliveryResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    connection_id: str
    delivery_id: str
    status: DeliveryStatus
    attempts: int = Field(ge=0)
    ack: dict[str, Any] | None = None

    @property
    def delivered(self) -> bool:
        return self.status == DeliveryStatus.ACKED


# --- Audit Models ---


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class AuditEvent(BaseModel):
    timestamp: str = Field(default_factory=_now_iso)
    event_type: AuditEventType
    source_ip: str | None = None
    conversation_id: str | None = None
    action: str
    result: str  # "success" | "failure" | "dropped"
    risk_level: RiskLevel
    details: dict[str, object] | None = None
