"""Authentication of inbound provider callbacks.

The provider presents a pre-shared bearer credential. When a signing secret
is configured the raw body may also carry an HMAC-SHA256 signature in
``X-Signature: sha256=<hex>``. All comparisons are constant-time.
"""

from __future__ import annotations

import hashlib
import hmac
from collections.abc import Mapping

SIGNATURE_HEADERS = ("x-signature", "x-netomi-signature")


class WebhookAuthError(Exception):
    """The callback presented a missing or invalid credential."""

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason


def sign_body(secret: str, body: bytes) -> str:
    """Signature header value for ``body``."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class WebhookAuthenticator:
    """Verifies bearer credential and optional body signature."""

    def __init__(
        self,
        bearer_token: str,
        signing_secret: str | None = None,
        require_signature: bool = False,
    ) -> None:
        self._token = bearer_token.encode()
        self._signing_secret = signing_secret
        self._require_signature = require_signature and signing_secret is not None

    def verify(self, headers: Mapping[str, str], body: bytes) -> None:
        """Raise WebhookAuthError unless the request is authentic."""
        lowered = {k.lower(): v for k, v in headers.items()}
        self.verify_bearer(lowered)
        self.verify_signature(lowered, body)

    def verify_bearer(self, headers: Mapping[str, str]) -> None:
        auth_header = headers.get("authorization", "")
        if not auth_header:
            raise WebhookAuthError("missing_token", "Missing Authorization header")
        if not auth_header.startswith("Bearer "):
            raise WebhookAuthError(
                "invalid_format", 'Invalid Authorization header format, expected "Bearer <token>"',
            )
        if not hmac.compare_digest(auth_header[7:].encode(), self._token):
            raise WebhookAuthError("invalid_token", "Invalid bearer token")

    def verify_signature(self, headers: Mapping[str, str], body: bytes) -> None:
        if self._signing_secret is None:
            return
        signature = next(
            (headers[name] for name in SIGNATURE_HEADERS if headers.get(name)), "",
        )
        if not signature:
            if self._require_signature:
                raise WebhookAuthError("missing_signature", "Missing signature")
            return
        expected = sign_body(self._signing_secret, body)
        if not hmac.compare_digest(signature.encode(), expected.encode()):
            raise WebhookAuthError("invalid_signature", "Invalid signature")
