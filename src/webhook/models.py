"""Data models for the provider webhook pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class WebhookResult:
    """Response to return to the provider for one callback."""

    status_code: int
    body: dict[str, Any]


@dataclass
class WebhookRecord:
    """One received callback, as kept in the inspection history."""

    received_at: int  # epoch milliseconds
    request_id: str | None
    conversation_id: str | None
    resolved: bool
    delivered: bool
    payload: dict[str, Any] = field(repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.received_at,
            "requestId": self.request_id,
            "conversationId": self.conversation_id,
            "resolved": self.resolved,
            "delivered": self.delivered,
            "type": "webhook_response",
            "payload": self.payload,
        }
