"""Outbound message submission to the conversational provider.

The provider answers a submission with an immediate acknowledgment and
delivers the actual reply later through the webhook. Authentication failures
are retried exactly once after forcing a token regeneration; every other
failure is surfaced to the caller as ``UpstreamError``.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, NoReturn

import httpx

from src.models import Acknowledgment, AuditEvent, AuditEventType, RiskLevel

if TYPE_CHECKING:
    from src.audit.logger import AuditLogger
    from src.upstream.token_provider import TokenProvider

logger = logging.getLogger(__name__)

_AUTH_STATUS_CODES = frozenset({401, 403})
_AUTH_ERROR_KEYWORDS = (
    "unauthorized",
    "unauthorised",
    "invalid token",
    "invalid_token",
    "token expired",
    "expired token",
    "token_expired",
    "authentication",
)


class UpstreamError(Exception):
    """The provider rejected a submission or could not be reached."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str = "",
        attempts: int = 1,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.attempts = attempts


def is_auth_failure(status_code: int, body: str) -> bool:
    """Classify a non-2xx provider response as an authentication failure."""
    if status_code in _AUTH_STATUS_CODES:
        return True
    lowered = body.lower()
    return any(keyword in lowered for keyword in _AUTH_ERROR_KEYWORDS)


class UpstreamGateway:
    """Sends user messages to the provider's process-message endpoint."""

    def __init__(
        self,
        message_url: str,
        token_provider: TokenProvider,
        channel_headers: dict[str, str],
        integration_channel: str = "CHAT_API",
        request_timeout: float = 30.0,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._message_url = message_url
        self._tokens = token_provider
        self._channel_headers = dict(channel_headers)
        self._integration_channel = integration_channel
        self._timeout = request_timeout
        self._audit = audit_logger

    async def submit(
        self,
        message: dict[str, Any],
        correlation_key: str,
        token: str | None = None,
    ) -> Acknowledgment:
        """Submit ``message`` and return the provider's acknowledgment.

        Raises:
            UpstreamError: the provider rejected the message (after the single
                auth retry, if one applied) or was unreachable.
            TokenAcquisitionError: no token could be obtained for the call.
        """
        if token is None:
            token = (await self._tokens.get_valid_token()).value

        resp = await self._post(message, correlation_key, token, attempt=1)
        if 200 <= resp.status_code < 300:
            return self._acknowledge(resp, correlation_key, attempts=1)

        if not is_auth_failure(resp.status_code, resp.text):
            self._fail(resp, correlation_key, attempts=1)

        logger.warning(
            "Provider rejected credentials for %s (HTTP %s); regenerating token",
            correlation_key, resp.status_code,
        )
        fresh = await self._tokens.invalidate_and_refresh()
        retry = await self._post(message, correlation_key, fresh.value, attempt=2)
        if 200 <= retry.status_code < 300:
            return self._acknowledge(retry, correlation_key, attempts=2)
        self._fail(retry, correlation_key, attempts=2)

    def _headers(self, correlation_key: str, token: str) -> dict[str, str]:
        return {
            **self._channel_headers,
            "x-integration-channel": self._integration_channel,
            "x-auth-token": token,
            "x-request-id": correlation_key,
            "Content-Type": "application/json",
        }

    async def _post(
        self,
        message: dict[str, Any],
        correlation_key: str,
        token: str,
        attempt: int,
    ) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                return await client.post(
                    self._message_url,
                    json=message,
                    headers=self._headers(correlation_key, token),
                )
        except httpx.TransportError as exc:
            self._log_error(correlation_key, None, attempt, str(exc))
            raise UpstreamError(
                "Upstream unavailable", status_code=None, body=str(exc), attempts=attempt,
            ) from exc

    def _acknowledge(
        self, resp: httpx.Response, correlation_key: str, attempts: int,
    ) -> Acknowledgment:
        try:
            body = resp.json()
        except (json.JSONDecodeError, ValueError):
            body = {"raw": resp.text}
        if not isinstance(body, dict):
            body = {"raw": body}
        logger.info(
            "Provider acknowledged %s (HTTP %s, attempt %d)",
            correlation_key, resp.status_code, attempts,
        )
        return Acknowledgment(
            correlation_key=correlation_key,
            status_code=resp.status_code,
            body=body,
            attempts=attempts,
        )

    def _fail(self, resp: httpx.Response, correlation_key: str, attempts: int) -> NoReturn:
        self._log_error(correlation_key, resp.status_code, attempts, resp.text)
        raise UpstreamError(
            f"Process message API error: {resp.status_code}",
            status_code=resp.status_code,
            body=resp.text,
            attempts=attempts,
        )

    def _log_error(
        self, correlation_key: str, status_code: int | None, attempt: int, body: str,
    ) -> None:
        logger.error(
            "Provider submission failed for %s (status=%s, attempt %d)",
            correlation_key, status_code, attempt,
        )
        if self._audit:
            self._audit.log(AuditEvent(
                event_type=AuditEventType.UPSTREAM_ERROR,
                action="submit",
                result="failure",
                risk_level=RiskLevel.MEDIUM,
                details={
                    "correlation_key": correlation_key,
                    "status_code": status_code,
                    "attempt": attempt,
                    "body": body[:500],
                },
            ))
