"""Runtime configuration read from environment variables."""

from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUE_VALUES


def generate_webhook_secret() -> str:
    return f"webhook-secret-{uuid.uuid4()}"


@dataclass(frozen=True)
class BridgeSettings:
    """Provider endpoints, webhook credentials and timing tunables."""

    webhook_bearer_token: str
    provider_auth_url: str = "https://auth-us.netomi.com/v1/auth/generate-token"
    provider_refresh_url: str | None = "https://auth-us.netomi.com/v1/auth/refresh-token"
    provider_message_url: str = (
        "https://aiapi-us.netomi.com/v1/conversations/process-message"
    )
    channel: str = "CHAT"
    integration_channel: str = "CHAT_API"
    channel_ref_id: str | None = None
    virtual_agent_id: str | None = None
    webhook_signing_secret: str | None = None
    require_signature: bool = False
    submit_wait_timeout_ms: int = 30_000
    realtime_ack_timeout_ms: int = 5_000
    token_refresh_lead_seconds: int = 60
    token_default_ttl_seconds: int = 1_800
    webhook_history_size: int = 100
    ws_ping_interval: int = 60
    ws_ping_timeout: int = 120
    public_base_url: str | None = None
    audit_log_path: str | None = None
    host: str = "0.0.0.0"
    port: int = 3000
    channel_headers: dict[str, str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        headers = {
            "x-channel": self.channel,
            "x-channel-ref-id": self.channel_ref_id,
            "x-virtual-agent-id": self.virtual_agent_id,
        }
        # Unset identifiers are omitted rather than sent empty
        object.__setattr__(
            self,
            "channel_headers",
            {k: v for k, v in headers.items() if v},
        )

    @classmethod
    def from_env(cls) -> BridgeSettings:
        token = os.environ.get("WEBHOOK_BEARER_TOKEN", "").strip()
        if not token:
            token = generate_webhook_secret()
            logger.warning(
                "WEBHOOK_BEARER_TOKEN not set; generated a one-off secret. "
                "Provider callbacks will fail after restart until it is configured.",
            )
        refresh_url = os.environ.get(
            "PROVIDER_REFRESH_URL", "https://auth-us.netomi.com/v1/auth/refresh-token",
        )
        return cls(
            webhook_bearer_token=token,
            provider_auth_url=os.environ.get(
                "PROVIDER_AUTH_URL", "https://auth-us.netomi.com/v1/auth/generate-token",
            ),
            provider_refresh_url=refresh_url or None,
            provider_message_url=os.environ.get(
                "PROVIDER_MESSAGE_URL",
                "https://aiapi-us.netomi.com/v1/conversations/process-message",
            ),
            channel=os.environ.get("PROVIDER_CHANNEL", "CHAT"),
            integration_channel=os.environ.get("PROVIDER_INTEGRATION_CHANNEL", "CHAT_API"),
            channel_ref_id=os.environ.get("PROVIDER_CHANNEL_REF_ID") or None,
            virtual_agent_id=os.environ.get("PROVIDER_VIRTUAL_AGENT_ID") or None,
            webhook_signing_secret=os.environ.get("WEBHOOK_SIGNING_SECRET") or None,
            require_signature=_env_bool("WEBHOOK_REQUIRE_SIGNATURE"),
            submit_wait_timeout_ms=_env_int("SUBMIT_WAIT_TIMEOUT_MS", 30_000),
            realtime_ack_timeout_ms=_env_int("REALTIME_ACK_TIMEOUT_MS", 5_000),
            token_refresh_lead_seconds=_env_int("TOKEN_REFRESH_LEAD_SECONDS", 60),
            token_default_ttl_seconds=_env_int("TOKEN_DEFAULT_TTL_SECONDS", 1_800),
            webhook_history_size=_env_int("WEBHOOK_HISTORY_SIZE", 100),
            ws_ping_interval=_env_int("WS_PING_INTERVAL", 60),
            ws_ping_timeout=_env_int("WS_PING_TIMEOUT", 120),
            public_base_url=os.environ.get("PUBLIC_BASE_URL") or None,
            audit_log_path=os.environ.get("AUDIT_LOG_PATH") or None,
            host=os.environ.get("HOST", "0.0.0.0"),
            port=_env_int("PORT", 3000),
        )
