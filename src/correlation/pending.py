"""Correlation table of callers waiting for a provider webhook.

A waiter is owned by the table from ``register`` until it is resolved,
rejected, expires or is cancelled by its caller, whichever happens first.
Registering a key that already has a waiter replaces it (last write wins);
the replaced waiter is never resolved and expires on its own deadline.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


class WebhookTimeoutError(TimeoutError):
    """No webhook arrived for the key before its deadline.

    Not a hard failure: the reply may still arrive later and reach the client
    through the realtime push path.
    """

    def __init__(self, key: str, timeout: float) -> None:
        super().__init__(f"Webhook response timeout for request {key} after {timeout:.3f}s")
        self.key = key
        self.timeout = timeout


@dataclass
class PendingWaiter:
    key: str
    created_at: float
    deadline: float
    future: asyncio.Future[dict[str, Any]]
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)


class PendingRequestTable:
    """Maps correlation keys to futures awaiting a webhook payload."""

    def __init__(self) -> None:
        self._waiters: dict[str, PendingWaiter] = {}

    def __len__(self) -> int:
        return len(self._waiters)

    def __contains__(self, key: object) -> bool:
        return key in self._waiters

    def keys(self) -> list[str]:
        return list(self._waiters)

    def register(self, key: str, timeout: float) -> asyncio.Future[dict[str, Any]]:
        """Create a waiter for ``key`` that fails after ``timeout`` seconds.

        Must be called from a running event loop. Cancelling the returned
        future removes the waiter immediately.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future[dict[str, Any]] = loop.create_future()
        now = loop.time()
        waiter = PendingWaiter(
            key=key,
            created_at=time.time(),
            deadline=now + timeout,
            future=future,
        )
        waiter.timer = loop.call_later(timeout, self._expire, waiter, timeout)
        future.add_done_callback(lambda _f: self._on_done(waiter))

        if key in self._waiters:
            logger.warning("Pending request %s re-registered; previous waiter abandoned", key)
        self._waiters[key] = waiter
        return future

    async def wait(self, key: str, timeout: float) -> dict[str, Any]:
        """Register ``key`` and wait for its payload.

        Raises:
            WebhookTimeoutError: no payload before ``timeout`` seconds.
        """
        return await self.register(key, timeout)

    def resolve(self, key: str, payload: dict[str, Any]) -> bool:
        """Fulfil the waiter for ``key``; False if nobody is waiting."""
        waiter = self._waiters.pop(key, None)
        if waiter is None:
            return False
        self._cancel_timer(waiter)
        if waiter.future.done():
            return False
        waiter.future.set_result(payload)
        logger.info("Resolved pending request: %s", key)
        return True

    def reject(self, key: str, error: BaseException) -> bool:
        """Fail the waiter for ``key`` with ``error``; False if nobody is waiting."""
        waiter = self._waiters.pop(key, None)
        if waiter is None:
            return False
        self._cancel_timer(waiter)
        if waiter.future.done():
            return False
        waiter.future.set_exception(error)
        return True

    def _expire(self, waiter: PendingWaiter, timeout: float) -> None:
        waiter.timer = None
        # A newer registration under the same key must survive this expiry
        if self._waiters.get(waiter.key) is waiter:
            del self._waiters[waiter.key]
        if not waiter.future.done():
            logger.info("Pending request %s timed out after %.3fs", waiter.key, timeout)
            waiter.future.set_exception(WebhookTimeoutError(waiter.key, timeout))

    def _on_done(self, waiter: PendingWaiter) -> None:
        # Covers caller cancellation; resolve/reject/expire already cleaned up
        if waiter.future.cancelled():
            self._cancel_timer(waiter)
            if self._waiters.get(waiter.key) is waiter:
                del self._waiters[waiter.key]

    @staticmethod
    def _cancel_timer(waiter: PendingWaiter) -> None:
        if waiter.timer is not None:
            waiter.timer.cancel()
            waiter.timer = None
