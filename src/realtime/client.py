"""Reconnecting realtime client.

Reference implementation of the browser side of the delivery channel, used
by the CLI ``listen`` command and the integration tests. It:
1. Keeps a WebSocket open, reconnecting forever with capped exponential backoff
2. Re-announces its client metadata after every (re)connect
3. Acknowledges every ``webhook_update`` so the server does not retry
4. Hands each distinct delivery to a handler exactly once
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

import websockets
import websockets.exceptions

logger = logging.getLogger(__name__)

UpdateHandler = Callable[[dict[str, Any]], Awaitable[None] | None]

_SEEN_DELIVERIES = 256


class RealtimeClient:
    """Persistent, self-healing connection to the bridge's ``/ws`` endpoint."""

    def __init__(
        self,
        url: str,
        client_info: dict[str, Any] | None = None,
        on_update: UpdateHandler | None = None,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 5.0,
        ping_interval: float | None = 60,
        ping_timeout: float | None = 120,
    ) -> None:
        self.url = url
        self.client_info = client_info or {"page": "chat-bridge-cli"}
        self.on_update = on_update
        self._initial_delay = reconnect_delay
        self._reconnect_delay = reconnect_delay
        self._max_reconnect_delay = max_reconnect_delay
        self._ping_interval = ping_interval
        self._ping_timeout = ping_timeout
        self._running = False
        self._ws: Any = None
        self._seen: deque[str] = deque(maxlen=_SEEN_DELIVERIES)
        self.connection_id: str | None = None
        self.connected = asyncio.Event()

    async def run(self) -> None:
        """Connect and keep reconnecting until ``stop`` is called."""
        self._running = True
        while self._running:
            try:
                await self._connect_once()
            except (OSError, websockets.exceptions.WebSocketException) as exc:
                logger.warning("Realtime connection error: %s", exc)
            finally:
                self.connected.clear()
                self.connection_id = None
                self._ws = None

            if not self._running:
                break
            logger.info("Reconnecting in %.1fs", self._reconnect_delay)
            await asyncio.sleep(self._reconnect_delay)
            self._reconnect_delay = min(self._reconnect_delay * 2, self._max_reconnect_delay)

    async def stop(self) -> None:
        self._running = False
        if self._ws is not None:
            await self._ws.close()

    async def _connect_once(self) -> None:
        async with websockets.connect(
            self.url,
            ping_interval=self._ping_interval,
            ping_timeout=self._ping_timeout,
        ) as ws:
            self._ws = ws
            await self._send({"event": "authenticate", "data": {"clientInfo": self.client_info}})
            async for raw in ws:
                try:
                    frame = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Ignoring malformed frame from server")
                    continue
                if isinstance(frame, dict):
                    await self._handle(frame)

    async def _handle(self, frame: dict[str, Any]) -> None:
        event = frame.get("event")
        data = frame.get("data") or {}

        if event == "connected":
            self.connection_id = data.get("connectionId")
            logger.info("Connected as %s", self.connection_id)
        elif event == "authenticated":
            self._reconnect_delay = self._initial_delay
            self.connected.set()
        elif event == "webhook_update":
            delivery_id = data.get("deliveryId")
            message = data.get("message") or {}
            if delivery_id not in self._seen:
                if delivery_id:
                    self._seen.append(delivery_id)
                if self.on_update is not None and "data" in message:
                    try:
                        outcome = self.on_update(message["data"])
                        if inspect.isawaitable(outcome):
                            await outcome
                    except Exception:
                        # A broken handler must not tear down the connection
                        logger.exception("Update handler failed for delivery %s", delivery_id)
            else:
                logger.debug("Duplicate delivery %s acknowledged again", delivery_id)

            # Always acknowledge so the server does not retry
            if "ackId" in frame:
                await self._send({
                    "event": "ack",
                    "ackId": frame["ackId"],
                    "data": {
                        "ok": True,
                        "receivedAt": int(time.time() * 1000),
                        "deliveryId": delivery_id,
                    },
                })

    async def _send(self, frame: dict[str, Any]) -> None:
        if self._ws is None:
            return
        await self._ws.send(json.dumps(frame))
