"""Per-operation rate limiting for remote AI calls.

Each operation name gets a ``RateLimiter`` combining two bounds:
- A concurrency slot pool (``asyncio.Semaphore``) capping in-flight calls
- A sliding window capping admissions per ``window_seconds``

``acquire`` first waits for a free slot, then for room in the window. When the
window is full it sleeps exactly until the oldest admission ages out instead of
polling. Both waits go through the caller's ``CancellationToken``; a cancelled
or expired waiter leaves holding nothing.

Usage:
    limiter = RateLimiter("analyze", max_requests_per_minute=60, max_concurrent=3)

    async with limiter.slot(token, on_throttled=lambda wait: ...):
        text = await client.analyze(image, token=token)
"""

from __future__ import annotations

import asyncio
import itertools
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from editpipeline.core.exceptions import ConfigurationError
from editpipeline.core.logging import get_logger
from editpipeline.core.metrics import observe_slot_wait, record_throttled, set_slots_in_use

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from editpipeline.core.cancellation import CancellationToken
    from editpipeline.core.config import Settings

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class RequestSlot:
    """A held admission for one remote call.

    Attributes:
        slot_id: Unique id within the limiter
        operation: Operation name the slot belongs to
        acquired_at: ``time.monotonic()`` at admission
    """

    slot_id: int
    operation: str
    acquired_at: float


class RateLimiter:
    """Sliding-window rate limiter with a bounded concurrency slot pool."""

    def __init__(
        self,
        operation: str,
        max_requests_per_minute: int = 60,
        max_concurrent: int = 3,
        window_seconds: float = 60.0,
    ) -> None:
        if max_requests_per_minute < 1:
            raise ConfigurationError(
                f"max_requests_per_minute must be positive, got {max_requests_per_minute}"
            )
        if max_concurrent < 1:
            raise ConfigurationError(f"max_concurrent must be positive, got {max_concurrent}")
        if window_seconds <= 0:
            raise ConfigurationError(f"window_seconds must be positive, got {window_seconds}")

        self._operation = operation
        self._max_requests = max_requests_per_minute
        self._max_concurrent = max_concurrent
        self._window_seconds = window_seconds

        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._window: deque[float] = deque()
        self._lock = asyncio.Lock()
        self._held: set[int] = set()
        self._slot_ids = itertools.count(1)

        set_slots_in_use(operation, 0)

    @classmethod
    def from_settings(cls, operation: str, settings: Settings) -> RateLimiter:
        return cls(
            operation,
            max_requests_per_minute=settings.max_requests_per_minute,
            max_concurrent=settings.max_concurrent,
            window_seconds=settings.rate_window_seconds,
        )

    @property
    def operation(self) -> str:
        return self._operation

    @property
    def in_use(self) -> int:
        """Number of slots currently held."""
        return len(self._held)

    @property
    def available_slots(self) -> int:
        return self._max_concurrent - len(self._held)

    def requests_in_window(self) -> int:
        """Number of admissions inside the trailing window."""
        self._prune(time.monotonic())
        return len(self._window)

    def _prune(self, now: float) -> None:
        cutoff = now - self._window_seconds
        while self._window and self._window[0] <= cutoff:
            self._window.popleft()

    async def acquire(
        self,
        token: CancellationToken,
        on_throttled: Callable[[float | None], None] | None = None,
    ) -> RequestSlot:
        """Wait for a concurrency slot and room in the rate window.

        Args:
            token: Cancellation token bounding the wait
            on_throttled: Called once, the first time the caller has to wait.
                Receives the window wait in seconds, or None when waiting on
                the slot pool.

        Returns:
            The held RequestSlot; pass it to ``release`` exactly once

        Raises:
            PipelineCancelledError: If the token is cancelled while waiting
            DeadlineExceededError: If the token's deadline passes while waiting
        """
        token.raise_if_cancelled()
        started = time.monotonic()
        throttled = False

        def _throttle(wait: float | None) -> None:
            nonlocal throttled
            if throttled:
                return
            throttled = True
            record_throttled(self._operation)
            if on_throttled is not None:
                on_throttled(wait)

        if self._semaphore.locked():
            logger.debug(f"RateLimiter '{self._operation}' slot pool exhausted, waiting")
            _throttle(None)

        acquire_task = asyncio.ensure_future(self._semaphore.acquire())
        try:
            await token.wait_for(acquire_task)
        except BaseException:
            # The permit may have been granted just as the wait gave up
            if not acquire_task.done():
                acquire_task.cancel()
            elif not acquire_task.cancelled() and acquire_task.exception() is None:
                self._semaphore.release()
            raise

        try:
            while True:
                async with self._lock:
                    now = time.monotonic()
                    self._prune(now)
                    if len(self._window) < self._max_requests:
                        self._window.append(now)
                        slot = RequestSlot(next(self._slot_ids), self._operation, now)
                        self._held.add(slot.slot_id)
                        break
                    wait = self._window[0] + self._window_seconds - now

                logger.debug(
                    f"RateLimiter '{self._operation}' window full "
                    f"({self._max_requests}/{self._window_seconds}s), waiting {wait:.2f}s"
                )
                _throttle(wait)
                await token.sleep(wait)
        except BaseException:
            self._semaphore.release()
            raise

        waited = slot.acquired_at - started
        observe_slot_wait(self._operation, waited)
        set_slots_in_use(self._operation, len(self._held))
        return slot

    def release(self, slot: RequestSlot) -> None:
        """Return a slot to the pool. Releasing twice is a no-op."""
        if slot.slot_id not in self._held:
            logger.debug(
                f"RateLimiter '{self._operation}' ignoring release of inactive slot {slot.slot_id}"
            )
            return
        self._held.discard(slot.slot_id)
        self._semaphore.release()
        set_slots_in_use(self._operation, len(self._held))

    @asynccontextmanager
    async def slot(
        self,
        token: CancellationToken,
        on_throttled: Callable[[float | None], None] | None = None,
    ) -> AsyncIterator[RequestSlot]:
        """Hold a slot for the duration of the block, releasing it on every exit path."""
        held = await self.acquire(token, on_throttled)
        try:
            yield held
        finally:
            self.release(held)

    def get_status(self) -> dict[str, Any]:
        """Get current limiter state for monitoring/debugging."""
        return {
            "operation": self._operation,
            "in_use": self.in_use,
            "available_slots": self.available_slots,
            "max_concurrent": self._max_concurrent,
            "requests_in_window": self.requests_in_window(),
            "max_requests_per_window": self._max_requests,
            "window_seconds": self._window_seconds,
        }

    def __repr__(self) -> str:
        return (
            f"RateLimiter(operation={self._operation!r}, "
            f"in_use={self.in_use}/{self._max_concurrent}, "
            f"window={len(self._window)}/{self._max_requests})"
        )
