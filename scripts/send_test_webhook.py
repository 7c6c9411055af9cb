#!/usr/bin/env python3
"""Send sample provider callbacks to a running bridge.

Checks that authentication behaves: a valid bearer token is accepted and a
wrong or missing one is rejected with 401.

Exit codes:
    0: every case behaved as expected
    1: at least one case did not

Usage:
    python scripts/send_test_webhook.py [--base-url URL] [--token TOKEN]
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from dataclasses import dataclass

import httpx


@dataclass
class Case:
    name: str
    token: str | None
    expected_status: int


def _payload(conversation_id: str) -> dict[str, object]:
    return {
        "conversationId": conversation_id,
        "triggerType": "RESPONSE",
        "message": "Test webhook payload",
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "requestId": f"test-request-{int(time.time() * 1000)}",
    }


def _fetch_token(client: httpx.Client, base_url: str) -> str | None:
    try:
        resp = client.get(f"{base_url}/webhook/info")
        resp.raise_for_status()
    except httpx.HTTPError as exc:
        print(f"Could not read /webhook/info: {exc}", file=sys.stderr)
        return None
    return resp.json().get("bearer_token")


def run_case(
    client: httpx.Client, base_url: str, case: Case, conversation_id: str,
) -> bool:
    headers = {"Content-Type": "application/json"}
    if case.token is not None:
        headers["Authorization"] = f"Bearer {case.token}"
    try:
        resp = client.post(
            f"{base_url}/webhook/provider",
            headers=headers,
            content=json.dumps(_payload(conversation_id)),
        )
    except httpx.HTTPError as exc:
        print(f"[ERROR] {case.name}: {exc}")
        return False

    ok = resp.status_code == case.expected_status
    label = "PASS" if ok else "FAIL"
    print(f"[{label}] {case.name}: HTTP {resp.status_code} (expected {case.expected_status})")
    print(f"        {resp.text}")
    return ok


def main() -> int:
    parser = argparse.ArgumentParser(description="Send sample webhooks to the bridge")
    parser.add_argument("--base-url", default="http://localhost:3000")
    parser.add_argument("--token", default=os.environ.get("WEBHOOK_BEARER_TOKEN"))
    parser.add_argument("--conversation-id", default="test-conversation-123")
    parser.add_argument("--insecure", action="store_true", help="Skip TLS verification")
    args = parser.parse_args()

    base_url = args.base_url.rstrip("/")
    with httpx.Client(timeout=10.0, verify=not args.insecure) as client:
        token = args.token or _fetch_token(client, base_url)
        if not token:
            print("No bearer token available; pass --token", file=sys.stderr)
            return 1

        cases = [
            Case("valid token", token, 200),
            Case("wrong token", "wrong-token", 401),
            Case("missing token", None, 401),
        ]
        results = [run_case(client, base_url, c, args.conversation_id) for c in cases]

    passed = sum(results)
    print(f"\n{passed}/{len(results)} cases behaved as expected")
    return 0 if all(results) else 1


if __name__ == "__main__":
    sys.exit(main())
