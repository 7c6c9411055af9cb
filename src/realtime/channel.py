"""Realtime delivery channel over WebSocket.

Each browser tab holds one connection. Frames are JSON objects of the form
``{"event": str, "data": object, "ackId": int?}``. Server pushes that expect
confirmation carry an ``ackId``; the client answers with
``{"event": "ack", "ackId": <same>, "data": {...}}``.

Connection lifecycle: CONNECTING -> OPEN -> AUTHENTICATED -> CLOSED. The
``authenticate`` event only records client metadata and is not a security
boundary; clients re-send it after every reconnect.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from src.models import (
    AuditEvent,
    AuditEventType,
    DeliveryResult,
    DeliveryStatus,
    RiskLevel,
)

if TYPE_CHECKING:
    from src.audit.logger import AuditLogger

logger = logging.getLogger(__name__)

_MAX_ATTEMPTS = 2  # initial emit plus one retry


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


class ChannelClosedError(Exception):
    """The connection closed while a delivery was waiting for its ack."""


class FrameTransport(Protocol):
    async def send_json(self, data: Any) -> None: ...


@dataclass
class Connection:
    connection_id: str
    transport: FrameTransport
    state: ConnectionState = ConnectionState.CONNECTING
    client_info: dict[str, Any] = field(default_factory=dict)
    connected_at: float = field(default_factory=time.time)
    pending_acks: dict[int, asyncio.Future[dict[str, Any]]] = field(
        default_factory=dict, repr=False,
    )

    @property
    def is_live(self) -> bool:
        if self.state not in (ConnectionState.OPEN, ConnectionState.AUTHENTICATED):
            return False
        # Starlette reports a peer that went away before we saw the disconnect
        client_state = getattr(self.transport, "client_state", None)
        return client_state != WebSocketState.DISCONNECTED


class RealtimeChannel:
    """Registry of live connections with acknowledged, retried delivery."""

    def __init__(
        self,
        ack_timeout: float = 5.0,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._ack_timeout = ack_timeout
        self._audit = audit_logger
        self._connections: dict[str, Connection] = {}
        self._disconnect_handlers: list[Callable[[str], object]] = []
        self._ack_ids = itertools.count(1)

    def __len__(self) -> int:
        return len(self._connections)

    def add_disconnect_handler(self, handler: Callable[[str], object]) -> None:
        """Register a callback invoked with the connection id on close."""
        self._disconnect_handlers.append(handler)

    def get(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def is_live(self, connection_id: str) -> bool:
        conn = self._connections.get(connection_id)
        return conn is not None and conn.is_live

    async def open(self, transport: FrameTransport) -> Connection:
        """Register an accepted transport and greet the client."""
        conn = Connection(connection_id=uuid.uuid4().hex, transport=transport)
        self._connections[conn.connection_id] = conn
        conn.state = ConnectionState.OPEN
        logger.info("Client connected: %s", conn.connection_id)
        await self.emit(conn.connection_id, "connected", {
            "connectionId": conn.connection_id,
            "serverTime": int(conn.connected_at * 1000),
        })
        return conn

    def close(self, connection_id: str, reason: str = "closed") -> None:
        """Mark a connection closed and release everything it held."""
        conn = self._connections.pop(connection_id, None)
        if conn is None:
            return
        conn.state = ConnectionState.CLOSED
        for future in conn.pending_acks.values():
            if not future.done():
                future.set_exception(ChannelClosedError(reason))
        conn.pending_acks.clear()
        logger.info("Client disconnected: %s (%s)", connection_id, reason)
        for handler in self._disconnect_handlers:
            try:
                handler(connection_id)
            except Exception:
                logger.exception("Disconnect handler failed for %s", connection_id)

    async def handle_frame(self, conn: Connection, frame: dict[str, Any]) -> None:
        event = frame.get("event")
        data = frame.get("data")

        if event == "authenticate":
            client_info = data.get("clientInfo", {}) if isinstance(data, dict) else {}
            conn.client_info = client_info if isinstance(client_info, dict) else {}
            conn.state = ConnectionState.AUTHENTICATED
            logger.info("Client %s announced: %s", conn.connection_id, conn.client_info)
            await self.emit(conn.connection_id, "authenticated", {
                "connectionId": conn.connection_id,
                "clientInfo": conn.client_info,
            })
        elif event == "ack":
            ack_id = frame.get("ackId")
            future = conn.pending_acks.get(ack_id) if isinstance(ack_id, int) else None
            if future is None or future.done():
                logger.debug("Late or unknown ack %r from %s", ack_id, conn.connection_id)
                return
            future.set_result(data if isinstance(data, dict) else {})
        elif event == "ping":
            await self.emit(conn.connection_id, "pong", {"serverTime": int(time.time() * 1000)})
        else:
            logger.debug("Ignoring event %r from %s", event, conn.connection_id)

    async def emit(
        self,
        connection_id: str,
        event: str,
        data: dict[str, Any],
        ack_id: int | None = None,
    ) -> None:
        """Fire-and-forget frame to one connection."""
        conn = self._connections.get(connection_id)
        if conn is None:
            raise ChannelClosedError(f"Unknown connection {connection_id}")
        frame: dict[str, Any] = {"event": event, "data": data}
        if ack_id is not None:
            frame["ackId"] = ack_id
        await conn.transport.send_json(frame)

    async def send(
        self,
        connection_id: str,
        event: str,
        payload: dict[str, Any],
        ack_timeout: float | None = None,
    ) -> DeliveryResult:
        """Emit ``event`` and wait for the client's acknowledgment.

        An ack timeout on a still-live connection is retried once with the
        same ``deliveryId``; a connection found dead is closed, which releases
        its conversation routes.
        """
        timeout = ack_timeout if ack_timeout is not None else self._ack_timeout
        delivery_id = uuid.uuid4().hex
        conn = self._connections.get(connection_id)
        if conn is None or not conn.is_live:
            if conn is not None:
                self.close(connection_id, "transport gone")
            return self._result(connection_id, delivery_id, DeliveryStatus.NOT_CONNECTED, 0)

        data = {**payload, "deliveryId": delivery_id}
        loop = asyncio.get_running_loop()
        attempts = 0
        while attempts < _MAX_ATTEMPTS:
            attempts += 1
            ack_id = next(self._ack_ids)
            future: asyncio.Future[dict[str, Any]] = loop.create_future()
            conn.pending_acks[ack_id] = future
            try:
                await self.emit(connection_id, event, data, ack_id=ack_id)
                ack = await asyncio.wait_for(future, timeout)
            except TimeoutError:
                logger.warning(
                    "No ack for %s %s from %s within %.1fs (attempt %d)",
                    event, delivery_id, connection_id, timeout, attempts,
                )
            except (ChannelClosedError, WebSocketDisconnect, RuntimeError, OSError) as exc:
                logger.info("Delivery %s to %s aborted: %s", delivery_id, connection_id, exc)
                self.close(connection_id, "send failed")
                return self._result(connection_id, delivery_id, DeliveryStatus.CLOSED, attempts)
            else:
                return self._result(
                    connection_id, delivery_id, DeliveryStatus.ACKED, attempts, ack,
                )
            finally:
                conn.pending_acks.pop(ack_id, None)

            if not conn.is_live:
                self.close(connection_id, "dead after ack timeout")
                return self._result(connection_id, delivery_id, DeliveryStatus.CLOSED, attempts)

        return self._result(connection_id, delivery_id, DeliveryStatus.TIMEOUT, attempts)

    async def serve(self, websocket: WebSocket) -> None:
        """Run one WebSocket session until the client goes away."""
        await websocket.accept()
        conn = await self.open(websocket)
        reason = "server closed"
        try:
            while True:
                text = await websocket.receive_text()
                try:
                    frame = json.loads(text)
                except json.JSONDecodeError:
                    logger.warning("Dropping malformed frame from %s", conn.connection_id)
                    continue
                if not isinstance(frame, dict):
                    logger.warning("Dropping non-object frame from %s", conn.connection_id)
                    continue
                await self.handle_frame(conn, frame)
        except WebSocketDisconnect as exc:
            reason = f"client disconnect ({exc.code})"
        finally:
            self.close(conn.connection_id, reason)

    def _result(
        self,
        connection_id: str,
        delivery_id: str,
        status: DeliveryStatus,
        attempts: int,
        ack: dict[str, Any] | None = None,
    ) -> DeliveryResult:
        result = DeliveryResult(
            connection_id=connection_id,
            delivery_id=delivery_id,
            status=status,
            attempts=attempts,
            ack=ack,
        )
        if self._audit:
            acked = status == DeliveryStatus.ACKED
            self._audit.log(AuditEvent(
                event_type=(
                    AuditEventType.DELIVERY_ACKED if acked else AuditEventType.DELIVERY_FAILED
                ),
                action="realtime_send",
                result="success" if acked else "failure",
                risk_level=RiskLevel.INFO if acked else RiskLevel.LOW,
                details={
                    "connection_id": connection_id,
                    "delivery_id": delivery_id,
                    "status": status.value,
                    "attempts": attempts,
                },
            ))
        return result
