"""Exponential backoff with jitter, and a cancellable sleep."""

from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Optional, TypeVar

T = TypeVar("T")

RETRY_BASE_MS = 500
RETRY_MAX_MS = 8_000


class CancellationToken:
    """Cooperative cancellation flag owned by one step attempt."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise asyncio.CancelledError(self.reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()


async def run_cancellable(awaitable: Awaitable[T], token: Optional[CancellationToken]) -> T:
    """Await ``awaitable`` but tear it down as soon as ``token`` is cancelled."""
    if token is None:
        return await awaitable
    token.raise_if_cancelled()
    work = asyncio.ensure_future(awaitable)
    watcher = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait({work, watcher}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        watcher.cancel()
    if work in done:
        return work.result()
    work.cancel()
    try:
        await work
    except asyncio.CancelledError:
        pass
    raise asyncio.CancelledError(token.reason or "cancelled")


def calculate_backoff_ms(attempt: int, base_ms: int = RETRY_BASE_MS, max_ms: int = RETRY_MAX_MS) -> int:
    """
    Delay before the next attempt.

    The exponential part is capped at ``max_ms``; up to half of it is added as
    jitter, so the result lies in ``[exp, 1.5 * exp)``.
    """
    exponential = min(max_ms, base_ms * (2 ** max(0, attempt - 1)))
    jitter = int(random.random() * (exponential / 2))
    return int(exponential + jitter)


async def sleep_ms(ms: int, token: Optional[CancellationToken] = None) -> None:
    """Sleep for ``ms``; returns early (raising CancelledError) when ``token`` trips."""
    if ms <= 0:
        return
    if token is None:
        await asyncio.sleep(ms / 1000.0)
        return
    token.raise_if_cancelled()
    try:
        await asyncio.wait_for(token.wait(), timeout=ms / 1000.0)
    except asyncio.TimeoutError:
        return
    token.raise_if_cancelled()
