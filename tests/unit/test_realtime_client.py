"""Tests for the reconnecting realtime client's frame handling."""

from __future__ import annotations

import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.realtime.client import RealtimeClient


def _make_client(**kwargs: Any) -> tuple[RealtimeClient, MagicMock]:
    client = RealtimeClient("ws://test/ws", **kwargs)
    ws = MagicMock()
    ws.send = AsyncMock()
    client._ws = ws
    return client, ws


def _sent(ws: MagicMock) -> list[dict[str, Any]]:
    return [json.loads(call.args[0]) for call in ws.send.await_args_list]


def _update(delivery_id: str, ack_id: int, payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "event": "webhook_update",
        "ackId": ack_id,
        "data": {
            "message": {"type": "webhook_response", "conversationId": "conv-1", "data": payload},
            "deliveryId": delivery_id,
        },
    }


class TestHandle:
    @pytest.mark.asyncio
    async def test_connected_and_authenticated(self) -> None:
        client, _ = _make_client(reconnect_delay=1.0)
        client._reconnect_delay = 5.0

        await client._handle({"event": "connected", "data": {"connectionId": "c1"}})
        await client._handle({"event": "authenticated", "data": {"connectionId": "c1"}})

        assert client.connection_id == "c1"
        assert client.connected.is_set()
        assert client._reconnect_delay == 1.0

    @pytest.mark.asyncio
    async def test_update_is_handled_and_acked(self) -> None:
        received: list[dict[str, Any]] = []
        client, ws = _make_client(on_update=received.append)

        await client._handle(_update("d-1", 7, {"text": "hi"}))

        assert received == [{"text": "hi"}]
        [ack] = _sent(ws)
        assert ack["event"] == "ack"
        assert ack["ackId"] == 7
        assert ack["data"]["ok"] is True
        assert ack["data"]["deliveryId"] == "d-1"

    @pytest.mark.asyncio
    async def test_retried_delivery_handled_once_but_acked_twice(self) -> None:
        handler = AsyncMock()
        client, ws = _make_client(on_update=handler)

        await client._handle(_update("d-1", 1, {"text": "hi"}))
        await client._handle(_update("d-1", 2, {"text": "hi"}))

        handler.assert_awaited_once_with({"text": "hi"})
        assert [f["ackId"] for f in _sent(ws)] == [1, 2]

    @pytest.mark.asyncio
    async def test_failing_handler_still_acked(self, caplog: pytest.LogCaptureFixture) -> None:
        handler = AsyncMock(side_effect=RuntimeError("render failed"))
        client, ws = _make_client(on_update=handler)

        await client._handle(_update("d-1", 3, {"text": "hi"}))
        await client._handle(_update("d-2", 4, {"text": "again"}))

        assert handler.await_count == 2
        assert [f["ackId"] for f in _sent(ws)] == [3, 4]
        assert "Update handler failed for delivery d-1" in caplog.text


class TestRun:
    @pytest.mark.asyncio
    async def test_backoff_is_capped(self, monkeypatch: pytest.MonkeyPatch) -> None:
        client = RealtimeClient("ws://test/ws", reconnect_delay=1.0, max_reconnect_delay=5.0)
        delays: list[float] = []

        async def failing_connect() -> None:
            raise OSError("refused")

        async def fake_sleep(delay: float) -> None:
            delays.append(delay)
            if len(delays) == 5:
                client._running = False

        monkeypatch.setattr(client, "_connect_once", failing_connect)
        monkeypatch.setattr("src.realtime.client.asyncio.sleep", fake_sleep)
        await client.run()

        assert delays == [1.0, 2.0, 4.0, 5.0, 5.0]
