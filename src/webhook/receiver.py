"""Provider webhook receiver.

Pipeline stages:
1. Authenticate (bearer credential, optional body signature)
2. Parse the body as a JSON object
3. Derive the correlation key and conversation id
4. Resolve a synchronous waiter and queue a push to the owning connection
5. Record the callback in the inspection history
6. Acknowledge with 200 at once, even when nobody consumed the payload;
   realtime delivery finishes in a tracked background task
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from src.models import AuditEvent, AuditEventType, RiskLevel
from src.webhook.auth import WebhookAuthError
from src.webhook.models import WebhookRecord, WebhookResult

if TYPE_CHECKING:
    from src.audit.logger import AuditLogger
    from src.correlation.pending import PendingRequestTable
    from src.correlation.router import ConversationRouter
    from src.webhook.auth import WebhookAuthenticator
    from src.webhook.history import WebhookHistory

logger = logging.getLogger(__name__)

_KEY_FIELDS = ("requestId", "id")


def _as_key(value: Any) -> str | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (str, int)):
        text = str(value).strip()
        return text or None
    return None


def extract_conversation_id(payload: dict[str, Any]) -> str | None:
    """Conversation id at top level or nested under ``conversation``/``data``."""
    found = _as_key(payload.get("conversationId"))
    if found:
        return found
    conversation = payload.get("conversation")
    if isinstance(conversation, dict):
        found = _as_key(conversation.get("id")) or _as_key(conversation.get("conversationId"))
        if found:
            return found
    data = payload.get("data")
    if isinstance(data, dict):
        return _as_key(data.get("conversationId"))
    return None


def extract_correlation_key(payload: dict[str, Any]) -> str | None:
    """Explicit request id or id, else the conversation id."""
    for name in _KEY_FIELDS:
        found = _as_key(payload.get(name))
        if found:
            return found
    return extract_conversation_id(payload)


class WebhookReceiver:
    """Turns authenticated provider callbacks into waiter resolutions and pushes."""

    def __init__(
        self,
        authenticator: WebhookAuthenticator,
        pending: PendingRequestTable,
        router: ConversationRouter,
        history: WebhookHistory | None = None,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._auth = authenticator
        self._pending = pending
        self._router = router
        self._history = history
        self._audit = audit_logger
        self._tasks: set[asyncio.Task[bool]] = set()

    async def handle(
        self,
        headers: Mapping[str, str],
        body: bytes,
        source_ip: str | None = None,
    ) -> WebhookResult:
        # Stage 1: authenticate before touching the body
        try:
            self._auth.verify(headers, body)
        except WebhookAuthError as exc:
            logger.error("Rejected provider webhook: %s", exc.reason)
            self._log(
                AuditEventType.WEBHOOK_AUTH_FAILURE, "authenticate", "failure",
                RiskLevel.HIGH, source_ip, None, {"reason": exc.reason},
            )
            return WebhookResult(status_code=401, body={"error": str(exc)})

        # Stage 2: parse
        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            payload = None
        if not isinstance(payload, dict):
            logger.error("Invalid or missing JSON payload on provider webhook")
            return WebhookResult(status_code=400, body={"error": "Invalid JSON payload"})

        # Stage 3: correlate
        request_id = extract_correlation_key(payload)
        conversation_id = extract_conversation_id(payload)

        # Stage 4: consumers are independent; both are attempted
        resolved = False
        if request_id is not None:
            resolved = self._pending.resolve(request_id, payload)
        # Submissions wait under the conversation id
        if not resolved and conversation_id is not None and conversation_id != request_id:
            resolved = self._pending.resolve(conversation_id, payload)

        # Stage 5: history; the push task flips ``delivered`` once acked
        record = WebhookRecord(
            received_at=int(time.time() * 1000),
            request_id=request_id,
            conversation_id=conversation_id,
            resolved=resolved,
            delivered=False,
            payload=payload,
        )
        if self._history is not None:
            self._history.record(record)

        # The provider is answered without waiting for the browser's ack
        queued = False
        if conversation_id is not None:
            if self._router.connection_for(conversation_id) is None:
                self._routing_miss(conversation_id, request_id, source_ip)
            else:
                task = asyncio.create_task(self._router.push(conversation_id, payload))
                self._tasks.add(task)
                task.add_done_callback(
                    lambda t: self._on_push_done(t, record, source_ip),
                )
                queued = True

        self._log(
            AuditEventType.WEBHOOK_RECEIVED, "webhook", "success", RiskLevel.INFO,
            source_ip, conversation_id,
            {"request_id": request_id, "resolved": resolved, "queued": queued},
        )

        # Stage 6: always acknowledge so the provider does not retry
        return WebhookResult(status_code=200, body={
            "success": True,
            "message": "Webhook received successfully",
            "requestId": request_id,
            "resolved": resolved,
            "queued": queued,
        })

    async def drain(self) -> None:
        """Wait for every in-flight push to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _on_push_done(
        self, task: asyncio.Task[bool], record: WebhookRecord, source_ip: str | None,
    ) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Push to conversation %s failed", record.conversation_id, exc_info=exc,
            )
            return
        record.delivered = task.result()
        if not record.delivered and record.conversation_id is not None:
            self._routing_miss(record.conversation_id, record.request_id, source_ip)

    def _routing_miss(
        self, conversation_id: str, request_id: str | None, source_ip: str | None,
    ) -> None:
        logger.info(
            "No live consumer for conversation %s; webhook dropped from push path",
            conversation_id,
        )
        self._log(
            AuditEventType.ROUTING_MISS, "push", "dropped", RiskLevel.LOW,
            source_ip, conversation_id, {"request_id": request_id},
        )

    def _log(
        self,
        event_type: AuditEventType,
        action: str,
        result: str,
        risk_level: RiskLevel,
        source_ip: str | None,
        conversation_id: str | None,
        details: dict[str, object],
    ) -> None:
        if self._audit:
            self._audit.log(AuditEvent(
                event_type=event_type,
                source_ip=source_ip,
                conversation_id=conversation_id,
                action=action,
                result=result,
                risk_level=risk_level,
                details=details,
            ))
