"""Click CLI for running and configuring the chat webhook bridge."""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
from pathlib import Path
from typing import Any

import click
import uvicorn

from src.audit.logger import read_audit_events
from src.config import BridgeSettings
from src.realtime.client import RealtimeClient
from src.server.app import webhook_info


ENV_TEMPLATE = """\
# Provider credentials and endpoints
PROVIDER_AUTH_URL=https://auth-us.netomi.com/v1/auth/generate-token
PROVIDER_REFRESH_URL=https://auth-us.netomi.com/v1/auth/refresh-token
PROVIDER_MESSAGE_URL=https://aiapi-us.netomi.com/v1/conversations/process-message
PROVIDER_CHANNEL=CHAT
PROVIDER_INTEGRATION_CHANNEL=CHAT_API
PROVIDER_CHANNEL_REF_ID=
PROVIDER_VIRTUAL_AGENT_ID=

# Credential the provider presents on webhook callbacks
WEBHOOK_BEARER_TOKEN={token}
WEBHOOK_SIGNING_SECRET=
WEBHOOK_REQUIRE_SIGNATURE=false

# Timing
SUBMIT_WAIT_TIMEOUT_MS=30000
REALTIME_ACK_TIMEOUT_MS=5000
TOKEN_REFRESH_LEAD_SECONDS=60

# Server
PUBLIC_BASE_URL=
HOST=0.0.0.0
PORT=3000
AUDIT_LOG_PATH=
"""


@click.group()
@click.option("--log-level", default="INFO", help="Root log level.")
def cli(log_level: str) -> None:
    """Chat webhook bridge CLI."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command()
@click.option("--host", default=None, help="Bind address (default: HOST or 0.0.0.0).")
@click.option("--port", default=None, type=int, help="Bind port (default: PORT or 3000).")
def serve(host: str | None, port: int | None) -> None:
    """Run the bridge server."""
    settings = BridgeSettings.from_env()
    # Long ping window keeps idle chat tabs connected
    uvicorn.run(
        "src.server.app:create_app_from_env",
        factory=True,
        host=host or settings.host,
        port=port or settings.port,
        ws_ping_interval=settings.ws_ping_interval,
        ws_ping_timeout=settings.ws_ping_timeout,
    )


@cli.command("webhook-info")
@click.option("--base-url", default=None, help="Public base URL of the bridge.")
def webhook_info_cmd(base_url: str | None) -> None:
    """Print the webhook URL and credential to give the provider."""
    settings = BridgeSettings.from_env()
    base = base_url or f"http://localhost:{settings.port}"
    click.echo(json.dumps(webhook_info(settings, base), indent=2))


@cli.command("generate-env")
@click.option("--output", default=".env", help="Path of the env file to write.")
def generate_env(output: str) -> None:
    """Write an env template with a fresh webhook bearer token."""
    target = Path(output)
    if target.exists():
        target = target.with_name(f"{target.name}.new")
        click.echo(f"{output} exists; writing {target} instead", err=True)
    token = f"webhook-secret-{secrets.token_hex(16)}"
    target.write_text(ENV_TEMPLATE.format(token=token))
    click.echo(f"Wrote {target}")
    click.echo(f"WEBHOOK_BEARER_TOKEN={token}")


@cli.command()
@click.option("--url", default="ws://localhost:3000/ws", help="Bridge WebSocket URL.")
def listen(url: str) -> None:
    """Connect as a client and print every webhook update."""

    def _print(payload: dict[str, Any]) -> None:
        click.echo(json.dumps(payload, indent=2))

    client = RealtimeClient(url, client_info={"page": "bridge-cli"}, on_update=_print)
    try:
        asyncio.run(client.run())
    except KeyboardInterrupt:
        click.echo("Stopped", err=True)


@cli.command()
@click.option("--path", "log_path", default=None, help="Audit log file (default: AUDIT_LOG_PATH).")
@click.option("--limit", default=20, type=click.IntRange(min=1), help="Newest events to show.")
def audit(log_path: str | None, limit: int) -> None:
    """Print the most recent audit events as JSON lines."""
    path = log_path or BridgeSettings.from_env().audit_log_path
    if not path:
        raise click.UsageError("No audit log configured; pass --path or set AUDIT_LOG_PATH")
    for event in read_audit_events(Path(path), limit=limit):
        click.echo(json.dumps(event))


if __name__ == "__main__":
    cli()
