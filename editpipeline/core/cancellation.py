"""Cooperative cancellation and deadlines for pipeline work.

A ``CancellationToken`` is handed down through every suspension point of a
pipeline request (slot waits, rate window waits, backoff sleeps and remote
calls). Waits are event driven: cancelling the token wakes every waiter
immediately, and a deadline bounds every wait without polling.

Usage:
    token = CancellationToken(timeout=180.0)

    # Anywhere downstream
    await token.sleep(delay)                     # raises when cancelled/expired
    text = await token.wait_for(client_call(), timeout=30.0)

    # From the caller side
    token.cancel("user pressed stop")

Child tokens inherit their parent's cancellation and can only tighten the
deadline, never extend it.
"""

from __future__ import annotations

import asyncio
import time
import weakref
from collections.abc import Awaitable
from datetime import UTC, datetime
from typing import TypeVar

from editpipeline.core.exceptions import DeadlineExceededError, PipelineCancelledError

T = TypeVar("T")


class CancellationToken:
    """Cancellation signal with an optional monotonic deadline."""

    def __init__(
        self,
        *,
        timeout: float | None = None,
        deadline: float | None = None,
        parent: CancellationToken | None = None,
    ) -> None:
        """Create a token.

        Args:
            timeout: Seconds from now until the token expires
            deadline: Absolute expiry on the ``time.monotonic()`` clock
            parent: Token whose cancellation propagates to this one
        """
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._cancelled_at: datetime | None = None
        self._children: weakref.WeakSet[CancellationToken] = weakref.WeakSet()

        candidates = []
        if deadline is not None:
            candidates.append(deadline)
        if timeout is not None:
            candidates.append(time.monotonic() + timeout)
        if parent is not None and parent.deadline is not None:
            candidates.append(parent.deadline)
        self._deadline: float | None = min(candidates) if candidates else None

        if parent is not None:
            if parent.is_cancelled:
                self.cancel(parent.reason)
            else:
                parent._children.add(self)

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    @property
    def cancelled_at(self) -> datetime | None:
        return self._cancelled_at

    @property
    def deadline(self) -> float | None:
        return self._deadline

    @property
    def expired(self) -> bool:
        """True once the deadline has passed."""
        return self._deadline is not None and time.monotonic() >= self._deadline

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None when there is no deadline."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def cancel(self, reason: str | None = None) -> bool:
        """Cancel the token and all of its children.

        Returns:
            True if this call cancelled the token, False if it already was
        """
        if self._event.is_set():
            return False
        self._reason = reason or "cancelled"
        self._cancelled_at = datetime.now(UTC)
        self._event.set()
        for child in list(self._children):
            child.cancel(self._reason)
        return True

    def child(
        self, *, timeout: float | None = None, deadline: float | None = None
    ) -> CancellationToken:
        """Create a linked token that is cancelled whenever this one is."""
        return CancellationToken(timeout=timeout, deadline=deadline, parent=self)

    def raise_if_cancelled(self) -> None:
        """Raise if the token is cancelled or past its deadline.

        Raises:
            PipelineCancelledError: If the token was cancelled
            DeadlineExceededError: If the deadline has passed
        """
        if self.is_cancelled:
            raise PipelineCancelledError(reason=self._reason)
        if self.expired:
            raise DeadlineExceededError()

    async def wait(self) -> None:
        """Block until the token is cancelled."""
        await self._event.wait()

    def _bound(self, timeout: float | None) -> tuple[float | None, bool]:
        """Combine a per-call timeout with the deadline.

        Returns:
            (effective timeout, whether the deadline is the binding limit)
        """
        remaining = self.remaining()
        if remaining is None:
            return timeout, False
        if timeout is None or remaining <= timeout:
            return remaining, True
        return timeout, False

    async def sleep(self, delay: float) -> None:
        """Sleep for ``delay`` seconds unless the token fires first.

        Raises:
            PipelineCancelledError: If cancelled while sleeping
            DeadlineExceededError: If the deadline falls inside the sleep
        """
        self.raise_if_cancelled()
        bound, by_deadline = self._bound(max(0.0, delay))
        try:
            await asyncio.wait_for(self._event.wait(), timeout=bound)
        except TimeoutError:
            if by_deadline:
                raise DeadlineExceededError() from None
            return
        raise PipelineCancelledError(reason=self._reason)

    async def wait_for(self, aw: Awaitable[T], timeout: float | None = None) -> T:
        """Await ``aw`` bounded by ``timeout``, the deadline and cancellation.

        The awaitable is cancelled and awaited before this method raises, so
        nothing it started outlives the call.

        Raises:
            PipelineCancelledError: If the token was cancelled first
            DeadlineExceededError: If the deadline expired first
            TimeoutError: If the per-call ``timeout`` expired first
        """
        if self.is_cancelled or self.expired:
            # Dispose of work that will never be awaited
            if asyncio.iscoroutine(aw):
                aw.close()
            elif isinstance(aw, asyncio.Future):
                aw.cancel()
            self.raise_if_cancelled()

        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        bound, by_deadline = self._bound(timeout)
        done: set[asyncio.Future[object]] = set()
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, timeout=bound, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            waiter.cancel()
            if task not in done and not task.done():
                task.cancel()
                await asyncio.wait({task})

        if task in done:
            return task.result()
        if self.is_cancelled:
            raise PipelineCancelledError(reason=self._reason)
        if by_deadline:
            raise DeadlineExceededError()
        raise TimeoutError(f"operation timed out after {timeout}s")

    def __repr__(self) -> str:
        return (
            f"CancellationToken(cancelled={self.is_cancelled}, "
            f"reason={self._reason!r}, remaining={self.remaining()})"
        )
