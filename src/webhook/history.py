"""Bounded in-memory history of received webhooks, for operational inspection."""

from __future__ import annotations

from collections import OrderedDict, deque
from typing import Any

from src.webhook.models import WebhookRecord


class WebhookHistory:
    """Ring buffer of recent callbacks plus a per-conversation log.

    Both are bounded: the recent buffer keeps ``max_recent`` records, each
    conversation keeps ``per_conversation`` records, and the least recently
    active conversations are evicted past ``max_conversations``.
    """

    def __init__(
        self,
        max_recent: int = 100,
        max_conversations: int = 1000,
        per_conversation: int = 100,
    ) -> None:
        self._recent: deque[WebhookRecord] = deque(maxlen=max_recent)
        self._conversations: OrderedDict[str, deque[WebhookRecord]] = OrderedDict()
        self._max_conversations = max_conversations
        self._per_conversation = per_conversation

    def __len__(self) -> int:
        return len(self._recent)

    def record(self, record: WebhookRecord) -> None:
        self._recent.append(record)
        conversation_id = record.conversation_id
        if conversation_id is None:
            return
        entries = self._conversations.get(conversation_id)
        if entries is None:
            entries = deque(maxlen=self._per_conversation)
            self._conversations[conversation_id] = entries
        self._conversations.move_to_end(conversation_id)
        entries.append(record)
        while len(self._conversations) > self._max_conversations:
            self._conversations.popitem(last=False)

    def recent(self, limit: int | None = None) -> list[dict[str, Any]]:
        """Most recent records, newest first."""
        records = list(reversed(self._recent))
        if limit is not None:
            records = records[:limit]
        return [r.to_dict() for r in records]

    def conversation(self, conversation_id: str) -> list[dict[str, Any]]:
        return [r.to_dict() for r in self._conversations.get(conversation_id, ())]

    def conversations(self) -> dict[str, dict[str, Any]]:
        return {
            conversation_id: {
                "messageCount": len(entries),
                "lastActivity": entries[-1].received_at if entries else None,
            }
            for conversation_id, entries in self._conversations.items()
        }
