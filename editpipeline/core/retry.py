"""Retry policy with exponential backoff and jitter for remote AI calls.

Only errors that declare themselves ``retryable`` (remote timeouts, transient
network failures, invalid responses) are retried. Everything else, including
an open circuit, cancellation and an expired deadline, fails fast. Backoff
sleeps go through the caller's ``CancellationToken`` so a cancelled request
never waits out its backoff.

Usage:
    from editpipeline.core.retry import RetryConfig, RetryPolicy

    policy = RetryPolicy(RetryConfig(max_attempts=3, base_delay=0.5))
    result = await policy.execute(token, lambda: client.analyze(image, token=token),
                                  operation="analyze")
    result.value, result.attempts
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import TYPE_CHECKING

from prometheus_client import Counter

from editpipeline.core.exceptions import CircuitOpenError, PipelineError
from editpipeline.core.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from editpipeline.core.cancellation import CancellationToken
    from editpipeline.core.config import Settings

logger = get_logger(__name__)

# =============================================================================
# Prometheus Metrics
# =============================================================================

RETRY_ATTEMPTS_TOTAL = Counter(
    "editpipeline_retry_attempts_total",
    "Total number of retry decisions",
    labelnames=["operation", "outcome"],  # outcome: success, retry, exhausted, fatal
)

RETRY_OPERATIONS_TOTAL = Counter(
    "editpipeline_retry_operations_total",
    "Total number of retries scheduled",
    labelnames=["operation"],
)


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_attempts: Total attempts including the first (1 means no retries)
        base_delay: Delay in seconds before the first retry
        max_delay: Cap on the exponential part of the delay in seconds
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryConfig:
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_backoff,
            max_delay=settings.retry_max_backoff,
        )


@dataclass(frozen=True)
class RetryResult[T]:
    """Value returned by a successful call and the attempts it took."""

    value: T
    attempts: int


# =============================================================================
# Backoff Calculation
# =============================================================================


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay after a failed attempt using exponential backoff with jitter.

    The delay is calculated as:
        backoff = min(max_delay, base_delay * 2 ^ (attempt - 1))
        delay = backoff + random(0, backoff / 4)

    Jitter is only ever added, so the delay never drops below the backoff.

    Args:
        attempt: The failed attempt number (1-indexed)
        config: Retry configuration

    Returns:
        Delay in seconds before the next attempt
    """
    backoff = min(config.max_delay, config.base_delay * (2 ** (attempt - 1)))
    # Not cryptographic, just spreads out retries from concurrent requests
    jitter = random.uniform(0, backoff / 4)  # noqa: S311
    return max(0.0, backoff + jitter)


# =============================================================================
# Retry Policy
# =============================================================================


class RetryPolicy:
    """Bounded retry loop over a cancellable backoff timer."""

    def __init__(self, config: RetryConfig | None = None) -> None:
        self._config = config or RetryConfig()

    @property
    def config(self) -> RetryConfig:
        return self._config

    async def execute[T](
        self,
        token: CancellationToken,
        func: Callable[[], Awaitable[T]],
        *,
        operation: str,
        on_retry: Callable[[int, PipelineError, float], None] | None = None,
    ) -> RetryResult[T]:
        """Run ``func`` until it succeeds, fails fatally, or attempts run out.

        Args:
            token: Cancellation token observed before each attempt and during backoff
            func: Zero-argument coroutine factory performing one attempt
            operation: Operation name for metrics and logging
            on_retry: Called as ``on_retry(next_attempt, error, delay)`` before each backoff

        Returns:
            RetryResult with the value and the number of attempts made

        Raises:
            PipelineError: The last error, with ``attempts`` set to the attempts made
        """
        config = self._config
        attempt = 0

        while True:
            attempt += 1
            try:
                token.raise_if_cancelled()
                value = await func()
            except PipelineError as e:
                # A rejection by an open circuit never reached the remote service
                e.attempts = attempt - 1 if isinstance(e, CircuitOpenError) else attempt

                if not e.retryable:
                    RETRY_ATTEMPTS_TOTAL.labels(operation=operation, outcome="fatal").inc()
                    raise

                if attempt >= config.max_attempts:
                    logger.error(
                        f"Operation '{operation}' failed after {attempt} attempts: {e.message}",
                        extra={
                            "operation": operation,
                            "attempts": attempt,
                            "outcome": "exhausted",
                            "error_kind": e.kind.value,
                        },
                    )
                    RETRY_ATTEMPTS_TOTAL.labels(operation=operation, outcome="exhausted").inc()
                    raise

                delay = calculate_delay(attempt, config)
                logger.warning(
                    f"Operation '{operation}' failed (attempt {attempt}/{config.max_attempts}), "
                    f"retrying in {delay:.2f}s: {e.message}",
                    extra={
                        "operation": operation,
                        "attempt": attempt,
                        "max_attempts": config.max_attempts,
                        "delay_seconds": delay,
                        "error_kind": e.kind.value,
                    },
                )
                RETRY_ATTEMPTS_TOTAL.labels(operation=operation, outcome="retry").inc()
                RETRY_OPERATIONS_TOTAL.labels(operation=operation).inc()

                if on_retry is not None:
                    on_retry(attempt + 1, e, delay)

                try:
                    await token.sleep(delay)
                except PipelineError as stop:
                    stop.attempts = attempt
                    raise
                continue

            if attempt > 1:
                logger.info(
                    f"Operation '{operation}' succeeded after {attempt} attempts",
                    extra={"operation": operation, "attempts": attempt, "outcome": "success"},
                )
                RETRY_ATTEMPTS_TOTAL.labels(operation=operation, outcome="success").inc()
            return RetryResult(value=value, attempts=attempt)
