"""FastAPI application bridging the chat widget and the provider."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI, Query, Request, WebSocket
from fastapi.responses import JSONResponse

from src.audit.logger import AuditLogger
from src.config import BridgeSettings
from src.correlation.pending import PendingRequestTable, WebhookTimeoutError
from src.correlation.router import ConversationRouter
from src.models import SubmitRequest
from src.realtime.channel import RealtimeChannel
from src.upstream.gateway import UpstreamError, UpstreamGateway
from src.upstream.token_provider import TokenAcquisitionError, TokenProvider
from src.webhook.auth import WebhookAuthenticator
from src.webhook.history import WebhookHistory
from src.webhook.receiver import WebhookReceiver

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/webhook/provider"


@dataclass
class BridgeState:
    """Per-app collaborators; nothing is shared between app instances."""

    settings: BridgeSettings
    token_provider: TokenProvider
    gateway: UpstreamGateway
    channel: RealtimeChannel
    router: ConversationRouter
    pending: PendingRequestTable
    history: WebhookHistory
    receiver: WebhookReceiver


def create_app_from_env() -> FastAPI:
    """Factory for uvicorn --factory: reads config from environment variables."""
    settings = BridgeSettings.from_env()
    audit_logger = (
        AuditLogger.from_env(settings.audit_log_path) if settings.audit_log_path else None
    )
    return create_app(settings, audit_logger=audit_logger)


def webhook_info(settings: BridgeSettings, base_url: str) -> dict[str, Any]:
    """Everything the provider's team needs to configure the callback."""
    url = f"{(settings.public_base_url or base_url).rstrip('/')}{WEBHOOK_PATH}"
    token = settings.webhook_bearer_token
    return {
        "webhook_endpoint": url,
        "authentication": {
            "method": "Bearer Token",
            "header": "Authorization: Bearer <token>",
            "required": True,
        },
        "bearer_token": token,
        "instructions": [
            "Configure the following webhook URL with the provider:",
            f"URL: {url}",
            "Method: POST",
            "Authentication: Bearer Token",
            f"Authorization Header: Bearer {token}",
            "Content-Type: application/json",
        ],
        "test_command": (
            f'curl -X POST "{url}" -H "Authorization: Bearer {token}" '
            "-H \"Content-Type: application/json\" -d '{\"test\": \"payload\"}'"
        ),
    }


def build_message(body: SubmitRequest, conversation_id: str) -> dict[str, Any]:
    """Provider message for ``body``; caller-supplied messageData wins."""
    if body.message_data is not None:
        message = dict(body.message_data)
        message.setdefault("conversationId", conversation_id)
        return message
    return {
        "conversationId": conversation_id,
        "messagePayload": {
            "text": body.text,
            "label": "",
            "messageId": str(uuid.uuid4()),
            "timestamp": int(time.time() * 1000),
            "hideMessage": False,
        },
        "userDetails": {"userId": "chat-widget-user"},
        "origin": "chat-widget",
        "eventType": "message",
    }


def create_app(
    settings: BridgeSettings,
    token_provider: TokenProvider | None = None,
    gateway: UpstreamGateway | None = None,
    audit_logger: AuditLogger | None = None,
) -> FastAPI:
    """Create the bridge app with its own channel, router and waiter table."""
    if token_provider is None:
        token_provider = TokenProvider(
            settings.provider_auth_url,
            settings.channel_headers,
            refresh_url=settings.provider_refresh_url,
            refresh_lead_seconds=settings.token_refresh_lead_seconds,
            default_ttl_seconds=settings.token_default_ttl_seconds,
            audit_logger=audit_logger,
        )
    if gateway is None:
        gateway = UpstreamGateway(
            settings.provider_message_url,
            token_provider,
            settings.channel_headers,
            integration_channel=settings.integration_channel,
            audit_logger=audit_logger,
        )

    channel = RealtimeChannel(
        ack_timeout=settings.realtime_ack_timeout_ms / 1000,
        audit_logger=audit_logger,
    )
    router = ConversationRouter(channel)
    channel.add_disconnect_handler(router.unbind_all)
    pending = PendingRequestTable()
    history = WebhookHistory(max_recent=settings.webhook_history_size)
    authenticator = WebhookAuthenticator(
        settings.webhook_bearer_token,
        signing_secret=settings.webhook_signing_secret,
        require_signature=settings.require_signature,
    )
    receiver = WebhookReceiver(authenticator, pending, router, history, audit_logger)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        yield
        # Let queued realtime pushes settle before the loop goes away
        await receiver.drain()

    app = FastAPI(docs_url=None, redoc_url=None, lifespan=lifespan)

    state = BridgeState(
        settings=settings,
        token_provider=token_provider,
        gateway=gateway,
        channel=channel,
        router=router,
        pending=pending,
        history=history,
        receiver=receiver,
    )
    app.state.bridge = state

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "connections": len(channel),
            "conversations": len(router),
            "pending": len(pending),
        }

    @app.post("/message")
    async def submit_message(body: SubmitRequest) -> JSONResponse:
        conversation_id = (
            body.conversation_id
            or (body.message_data or {}).get("conversationId")
            or uuid.uuid4().hex
        )
        request_id = conversation_id

        # Bind first so a fast webhook cannot overtake the mapping
        if body.client_connection_id:
            router.bind(conversation_id, body.client_connection_id)

        waiter: asyncio.Future[dict[str, Any]] | None = None
        if body.wait_for_webhook:
            timeout_ms = body.timeout_ms or settings.submit_wait_timeout_ms
            waiter = pending.register(request_id, timeout_ms / 1000)

        message = build_message(body, conversation_id)
        try:
            ack = await gateway.submit(message, request_id)
        except TokenAcquisitionError as exc:
            _discard(waiter)
            logger.error("Token acquisition failed for %s: %s", request_id, exc)
            return JSONResponse(
                {"ok": False, "error": str(exc), "requestId": request_id}, status_code=503,
            )
        except UpstreamError as exc:
            _discard(waiter)
            return JSONResponse(
                {"ok": False, "error": str(exc), "requestId": request_id}, status_code=502,
            )

        result: dict[str, Any] = {
            "ok": True,
            "acknowledgment": ack.body,
            "requestId": request_id,
        }
        if waiter is not None:
            try:
                result["webhookResponse"] = await waiter
            except WebhookTimeoutError:
                # Reply may still arrive later over the realtime channel
                result["webhookResponse"] = None
                result["pending"] = True
        return JSONResponse(result)

    @app.post(WEBHOOK_PATH)
    async def provider_webhook(request: Request) -> JSONResponse:
        source_ip = request.client.host if request.client else None
        try:
            body = await request.body()
            outcome = await receiver.handle(request.headers, body, source_ip)
        except Exception:
            logger.exception("Unhandled error while processing provider webhook")
            return JSONResponse({"error": "Internal server error"}, status_code=500)
        return JSONResponse(outcome.body, status_code=outcome.status_code)

    @app.get("/webhook/info")
    async def get_webhook_info(request: Request) -> dict[str, Any]:
        return webhook_info(settings, str(request.base_url))

    @app.get("/webhook/test")
    async def webhook_test(request: Request) -> dict[str, Any]:
        base = (settings.public_base_url or str(request.base_url)).rstrip("/")
        return {
            "success": True,
            "message": "Webhook endpoint is accessible",
            "timestamp": datetime.now(UTC).isoformat(),
            "url": f"{base}{WEBHOOK_PATH}",
        }

    @app.get("/api/test-connection")
    async def test_connection() -> JSONResponse:
        try:
            await token_provider.get_valid_token()
        except TokenAcquisitionError as exc:
            return JSONResponse(
                {"success": False, "error": str(exc), "token": token_provider.snapshot()},
                status_code=503,
            )
        return JSONResponse({
            "success": True,
            "message": "Provider token acquired",
            "token": token_provider.snapshot(),
        })

    @app.get("/api/conversations")
    async def list_conversations() -> dict[str, Any]:
        conversations = history.conversations()
        return {"conversations": conversations, "total": len(conversations)}

    @app.get("/api/conversations/{conversation_id}")
    async def get_conversation(conversation_id: str) -> dict[str, Any]:
        responses = history.conversation(conversation_id)
        return {
            "conversationId": conversation_id,
            "responses": responses,
            "count": len(responses),
            "connectionId": router.connection_for(conversation_id),
        }

    @app.get("/api/webhooks/recent")
    async def recent_webhooks(
        limit: int | None = Query(default=None, ge=1),
    ) -> dict[str, Any]:
        return {"webhooks": history.recent(limit)}

    @app.websocket("/ws")
    async def realtime(websocket: WebSocket) -> None:
        await channel.serve(websocket)

    return app


def _discard(waiter: asyncio.Future[dict[str, Any]] | None) -> None:
    # Cancelling removes the waiter from the table
    if waiter is None:
        return
    if not waiter.done():
        waiter.cancel()
    elif not waiter.cancelled():
        waiter.exception()
