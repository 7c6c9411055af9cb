"""Provider credential cache with lazy, single-flight refresh.

The provider issues short-lived auth tokens from a dedicated endpoint. The
cached token is reused until it is within ``refresh_lead_seconds`` of expiry;
callers that detect an auth failure downstream force a regeneration through
``invalidate_and_refresh``. Concurrent refreshes share one in-flight request.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import httpx

from src.models import AuditEvent, AuditEventType, RiskLevel, Token

if TYPE_CHECKING:
    from src.audit.logger import AuditLogger

logger = logging.getLogger(__name__)

_TOKEN_FIELDS = ("token", "accessToken", "access_token", "authToken")
_EXPIRES_IN_FIELDS = ("expiresIn", "expires_in")
_EXPIRES_AT_FIELDS = ("expiresAt", "expires_at")
_REFRESH_FIELDS = ("refreshToken", "refresh_token")
_ENVELOPE_FIELDS = ("payload", "data")


class TokenAcquisitionError(Exception):
    """Raised when the token endpoint is unreachable or rejects the request."""

    def __init__(
        self, message: str, status_code: int | None = None, body: str = "",
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


def _first(data: dict[str, Any], fields: tuple[str, ...]) -> Any:
    for name in fields:
        value = data.get(name)
        if value not in (None, ""):
            return value
    return None


def _unwrap(data: dict[str, Any]) -> dict[str, Any]:
    """Token responses are sometimes wrapped in a payload/data envelope."""
    if _first(data, _TOKEN_FIELDS) is not None:
        return data
    for name in _ENVELOPE_FIELDS:
        inner = data.get(name)
        if isinstance(inner, dict) and _first(inner, _TOKEN_FIELDS) is not None:
            return inner
    return data


def parse_token_response(
    body: dict[str, Any] | str, now: float, default_ttl_seconds: float,
) -> Token:
    """Build a Token from a token endpoint response body.

    A plain string body is the token itself. Expiry comes from a relative
    ``expiresIn`` or absolute ``expiresAt`` (seconds or milliseconds since the
    epoch), else ``default_ttl_seconds`` from ``now``.
    """
    if isinstance(body, str):
        value = body.strip()
        if not value:
            raise TokenAcquisitionError("Token endpoint returned an empty body")
        return Token(value=value, expires_at=now + default_ttl_seconds)

    data = _unwrap(body)
    value = _first(data, _TOKEN_FIELDS)
    if not isinstance(value, str) or not value:
        raise TokenAcquisitionError("Token endpoint response has no token field")

    expires_at = now + default_ttl_seconds
    expires_in = _first(data, _EXPIRES_IN_FIELDS)
    absolute = _first(data, _EXPIRES_AT_FIELDS)
    try:
        if expires_in is not None:
            expires_at = now + float(expires_in)
        elif absolute is not None:
            expires_at = float(absolute)
            if expires_at > 1e12:  # milliseconds
                expires_at /= 1000.0
    except (TypeError, ValueError):
        logger.warning("Ignoring unparseable token expiry: %r", expires_in or absolute)

    refresh = _first(data, _REFRESH_FIELDS)
    return Token(
        value=value,
        expires_at=expires_at,
        refresh_token=refresh if isinstance(refresh, str) else None,
    )


class TokenProvider:
    """Caches the provider auth token and refreshes it on demand."""

    def __init__(
        self,
        auth_url: str,
        channel_headers: dict[str, str],
        refresh_url: str | None = None,
        refresh_lead_seconds: float = 60.0,
        default_ttl_seconds: float = 1800.0,
        request_timeout: float = 10.0,
        audit_logger: AuditLogger | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._auth_url = auth_url
        self._refresh_url = refresh_url
        self._channel_headers = dict(channel_headers)
        self._refresh_lead = refresh_lead_seconds
        self._default_ttl = default_ttl_seconds
        self._timeout = request_timeout
        self._audit = audit_logger
        self._clock = clock
        self._token: Token | None = None
        self._inflight: asyncio.Future[Token] | None = None

    @property
    def cached(self) -> Token | None:
        return self._token

    async def get_valid_token(self) -> Token:
        """Return the cached token, refreshing it first if it is near expiry."""
        token = self._token
        if token is not None and token.is_valid(self._clock(), self._refresh_lead):
            return token
        return await self._refresh(use_refresh_token=True)

    async def invalidate_and_refresh(self) -> Token:
        """Drop the cached token and obtain a brand new one.

        Called after the provider rejected a request as unauthenticated, so
        the refresh-token path is skipped.
        """
        if self._inflight is None or self._inflight.done():
            self._token = None
        return await self._refresh(use_refresh_token=False)

    def snapshot(self) -> dict[str, Any]:
        """Non-secret view of the cache state."""
        token = self._token
        if token is None:
            return {"has_token": False, "expires_at": None, "seconds_remaining": None}
        remaining = max(0.0, token.expires_at - self._clock())
        return {
            "has_token": True,
            "expires_at": token.expires_at,
            "seconds_remaining": round(remaining, 1),
        }

    async def _refresh(self, use_refresh_token: bool) -> Token:
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.ensure_future(self._acquire(use_refresh_token))
        inflight = self._inflight
        try:
            # Shielded so one cancelled caller does not abort the shared request
            return await asyncio.shield(inflight)
        finally:
            if inflight.done() and self._inflight is inflight:
                self._inflight = None

    async def _acquire(self, use_refresh_token: bool) -> Token:
        previous = self._token
        token: Token | None = None
        source = "generate"

        if (
            use_refresh_token
            and self._refresh_url
            and previous is not None
            and previous.refresh_token
        ):
            try:
                token = await self._request_token(
                    self._refresh_url, {"refreshToken": previous.refresh_token},
                )
                source = "refresh"
            except TokenAcquisitionError as exc:
                logger.warning("Token refresh failed, generating a new token: %s", exc)

        if token is None:
            try:
                token = await self._request_token(self._auth_url, None)
            except TokenAcquisitionError as exc:
                self._log_refresh("failure", source, {"error": str(exc)})
                raise

        self._token = token
        logger.info(
            "Acquired provider token via %s (expires in %.0fs)",
            source, token.expires_at - self._clock(),
        )
        self._log_refresh("success", source, None)
        return token

    async def _request_token(self, url: str, body: dict[str, Any] | None) -> Token:
        headers = dict(self._channel_headers)
        if body is not None:
            headers["Content-Type"] = "application/json"
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, headers=headers, json=body)
        except httpx.HTTPError as exc:
            raise TokenAcquisitionError(f"Token endpoint unreachable: {exc}") from exc

        if not 200 <= resp.status_code < 300:
            raise TokenAcquisitionError(
                f"Token endpoint returned {resp.status_code}",
                status_code=resp.status_code,
                body=resp.text,
            )

        try:
            data = resp.json()
        except ValueError:
            data = resp.text
        if not isinstance(data, (dict, str)):
            raise TokenAcquisitionError("Token endpoint returned an unexpected body")
        return parse_token_response(data, self._clock(), self._default_ttl)

    def _log_refresh(
        self, result: str, source: str, details: dict[str, object] | None,
    ) -> None:
        if self._audit:
            self._audit.log(AuditEvent(
                event_type=AuditEventType.TOKEN_REFRESH,
                action=f"token_{source}",
                result=result,
                risk_level=RiskLevel.INFO if result == "success" else RiskLevel.MEDIUM,
                details=details,
            ))
