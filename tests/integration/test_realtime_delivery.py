"""End-to-end webhook delivery over the WebSocket channel."""

from __future__ import annotations

import json
import time
from typing import Any

from starlette.testclient import TestClient

from src.server.app import create_app
from tests.conftest import make_settings, mock_gateway, webhook_headers


def _make_app() -> Any:
    return create_app(make_settings(realtime_ack_timeout_ms=2000), gateway=mock_gateway())


def _connect(ws: Any) -> str:
    greeting = ws.receive_json()
    assert greeting["event"] == "connected"
    ws.send_json({"event": "authenticate", "data": {"clientInfo": {"page": "/chat"}}})
    assert ws.receive_json()["event"] == "authenticated"
    return greeting["data"]["connectionId"]


def _post_webhook(client: TestClient, payload: dict[str, Any]) -> Any:
    return client.post(
        "/webhook/provider", headers=webhook_headers(), content=json.dumps(payload),
    )


def _ack(ws: Any, frame: dict[str, Any]) -> None:
    ws.send_json({
        "event": "ack",
        "ackId": frame["ackId"],
        "data": {"ok": True, "deliveryId": frame["data"]["deliveryId"]},
    })


def _wait_delivered(client: TestClient, deadline: float = 5.0) -> bool:
    stop = time.monotonic() + deadline
    while time.monotonic() < stop:
        [latest] = client.get("/api/webhooks/recent", params={"limit": 1}).json()["webhooks"]
        if latest["delivered"]:
            return True
        time.sleep(0.02)
    return False


def test_webhook_pushed_to_bound_connection() -> None:
    app = _make_app()
    with TestClient(app) as client, client.websocket_connect("/ws") as ws:
        connection_id = _connect(ws)
        submitted = client.post("/message", json={
            "conversationId": "conv-1", "text": "hi", "clientConnectionId": connection_id,
        })
        assert submitted.json()["ok"] is True

        payload = {"conversationId": "conv-1", "attachments": [{"type": "TEXT", "text": "hello"}]}
        resp = _post_webhook(client, payload)
        frame = ws.receive_json()
        _ack(ws, frame)
        delivered = _wait_delivered(client)

    assert resp.status_code == 200
    assert resp.json()["queued"] is True
    assert frame["event"] == "webhook_update"
    message = frame["data"]["message"]
    assert message["type"] == "webhook_response"
    assert message["conversationId"] == "conv-1"
    assert message["data"] == payload
    assert delivered is True


def test_webhook_answered_while_browser_is_silent() -> None:
    """The provider gets its 200 long before the browser's ack deadline."""
    app = _make_app()
    with TestClient(app) as client, client.websocket_connect("/ws") as ws:
        connection_id = _connect(ws)
        client.post("/message", json={
            "conversationId": "conv-1", "text": "hi", "clientConnectionId": connection_id,
        })

        started = time.monotonic()
        resp = _post_webhook(client, {"conversationId": "conv-1", "text": "hello"})
        elapsed = time.monotonic() - started

        # Ack only after the provider was answered
        _ack(ws, ws.receive_json())
        delivered = _wait_delivered(client)

    assert resp.status_code == 200
    assert resp.json()["queued"] is True
    assert elapsed < 1.0
    assert delivered is True


def test_disconnect_releases_conversations() -> None:
    app = _make_app()
    router = app.state.bridge.router
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            connection_id = _connect(ws)
            client.post("/message", json={
                "conversationId": "conv-1", "text": "hi", "clientConnectionId": connection_id,
            })
            assert router.connection_for("conv-1") == connection_id

        # Round trip so the server has processed the close
        client.get("/health")
        resp = _post_webhook(client, {"conversationId": "conv-1", "text": "late"})

    assert router.connection_for("conv-1") is None
    assert resp.status_code == 200
    assert resp.json()["queued"] is False


def test_reconnected_tab_takes_over_conversation() -> None:
    app = _make_app()
    router = app.state.bridge.router
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as old_ws:
            old_id = _connect(old_ws)
            client.post("/message", json={
                "conversationId": "conv-1", "text": "hi", "clientConnectionId": old_id,
            })
            with client.websocket_connect("/ws") as new_ws:
                new_id = _connect(new_ws)
                client.post("/message", json={
                    "conversationId": "conv-1", "text": "again", "clientConnectionId": new_id,
                })
                assert router.connection_for("conv-1") == new_id
                assert router.conversations_for(old_id) == set()


def test_bind_to_unknown_connection_is_ignored() -> None:
    app = _make_app()
    with TestClient(app) as client:
        resp = client.post("/message", json={
            "conversationId": "conv-1", "text": "hi", "clientConnectionId": "not-a-connection",
        })
    assert resp.status_code == 200
    assert app.state.bridge.router.connection_for("conv-1") is None
