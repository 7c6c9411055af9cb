"""Conversation to live-connection routing for realtime pushes."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from src.models import DeliveryResult

logger = logging.getLogger(__name__)

WEBHOOK_UPDATE_EVENT = "webhook_update"


class DeliveryChannel(Protocol):
    """The subset of the realtime channel the router depends on."""

    def is_live(self, connection_id: str) -> bool: ...

    async def send(
        self,
        connection_id: str,
        event: str,
        payload: dict[str, Any],
        ack_timeout: float | None = None,
    ) -> DeliveryResult: ...


class ConversationRouter:
    """Tracks which connection currently owns each conversation.

    A conversation maps to at most one connection (last bind wins, e.g. after
    a tab refresh); a connection may own many conversations. The reverse index
    lets a disconnect drop all of a connection's routes at once.
    """

    def __init__(self, channel: DeliveryChannel, ack_timeout: float | None = None) -> None:
        self._channel = channel
        self._ack_timeout = ack_timeout
        self._routes: dict[str, str] = {}
        self._owned: dict[str, set[str]] = {}

    def __len__(self) -> int:
        return len(self._routes)

    def connection_for(self, conversation_id: str) -> str | None:
        return self._routes.get(conversation_id)

    def conversations_for(self, connection_id: str) -> set[str]:
        return set(self._owned.get(connection_id, ()))

    def bind(self, conversation_id: str, connection_id: str) -> bool:
        """Route ``conversation_id`` to ``connection_id``.

        Returns False without changing anything when the connection is not
        live, so closed sessions never gain routes.
        """
        if not self._channel.is_live(connection_id):
            logger.warning(
                "Not binding conversation %s: connection %s is not live",
                conversation_id, connection_id,
            )
            return False

        previous = self._routes.get(conversation_id)
        if previous is not None and previous != connection_id:
            self._drop_owned(previous, conversation_id)
            logger.info(
                "Conversation %s moved from connection %s to %s",
                conversation_id, previous, connection_id,
            )
        self._routes[conversation_id] = connection_id
        self._owned.setdefault(connection_id, set()).add(conversation_id)
        return True

    def unbind_all(self, connection_id: str) -> set[str]:
        """Remove every route owned by ``connection_id``."""
        owned = self._owned.pop(connection_id, set())
        for conversation_id in owned:
            if self._routes.get(conversation_id) == connection_id:
                del self._routes[conversation_id]
        if owned:
            logger.info(
                "Released %d conversation(s) from connection %s",
                len(owned), connection_id,
            )
        return owned

    async def push(self, conversation_id: str, payload: dict[str, Any]) -> bool:
        """Deliver a webhook payload to the connection owning the conversation.

        Returns False when there is no live owner; offline recipients are not
        queued.
        """
        connection_id = self._routes.get(conversation_id)
        if connection_id is None:
            logger.info("No connection bound for conversation %s", conversation_id)
            return False
        if not self._channel.is_live(connection_id):
            logger.info(
                "Connection %s for conversation %s is gone; dropping route",
                connection_id, conversation_id,
            )
            self.unbind_all(connection_id)
            return False

        event_data = {
            "message": {
                "type": "webhook_response",
                "conversationId": conversation_id,
                "data": payload,
                "timestamp": int(time.time() * 1000),
            },
        }
        result = await self._channel.send(
            connection_id, WEBHOOK_UPDATE_EVENT, event_data, self._ack_timeout,
        )
        return result.delivered

    def _drop_owned(self, connection_id: str, conversation_id: str) -> None:
        owned = self._owned.get(connection_id)
        if owned is None:
            return
        owned.discard(conversation_id)
        if not owned:
            del self._owned[connection_id]
