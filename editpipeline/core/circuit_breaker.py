"""Rolling failure-ratio circuit breaker for remote AI operations.

Each operation name ("analyze", "generate") gets its own breaker, so a broken
generation backend does not block analysis.

States:
    - CLOSED: Normal operation. Every counted outcome is appended to a fixed-size
      outcome log; once it holds ``min_samples`` entries and the failure ratio
      reaches ``threshold`` the circuit opens.
    - OPEN: Calls are rejected with CircuitOpenError without touching the
      remote service. After ``open_duration`` the next caller becomes the trial.
    - HALF_OPEN: Exactly one trial call is in flight; concurrent callers are
      rejected. Trial success closes the circuit and clears the log, trial
      failure reopens it. A neutral trial outcome (cancellation, client-side
      error) frees the trial without a transition.

Only errors whose ``counts_as_failure`` is set (remote timeouts, transient
network failures, invalid responses) count against the service.

Usage:
    breaker = CircuitBreaker("analyze", CircuitBreakerConfig(threshold=0.5))

    # Protected call wrapper
    text = await breaker.call(lambda: client.analyze(image, token=token))

    # Manual allow / record
    trial = await breaker.allow()          # raises CircuitOpenError when open
    try:
        text = await client.analyze(image, token=token)
    except PipelineError as e:
        await breaker.record_outcome(trial, False if e.counts_as_failure else None)
        raise
    await breaker.record_outcome(trial, True)
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from prometheus_client import Counter, Gauge

from editpipeline.core.exceptions import CircuitOpenError, ConfigurationError, PipelineError
from editpipeline.core.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from editpipeline.core.config import Settings

logger = get_logger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Rejecting requests, waiting to recover
    HALF_OPEN = "half_open"  # One trial call probing recovery


_STATE_GAUGE_VALUES = {
    CircuitState.CLOSED: 0,
    CircuitState.OPEN: 1,
    CircuitState.HALF_OPEN: 2,
}

# =============================================================================
# Prometheus Metrics
# =============================================================================

CIRCUIT_BREAKER_STATE = Gauge(
    "editpipeline_circuit_breaker_state",
    "Current state of the circuit breaker (0=closed, 1=open, 2=half_open)",
    labelnames=["operation"],
)

CIRCUIT_BREAKER_FAILURES_TOTAL = Counter(
    "editpipeline_circuit_breaker_failures_total",
    "Total number of failures recorded by the circuit breaker",
    labelnames=["operation"],
)

CIRCUIT_BREAKER_REJECTED_TOTAL = Counter(
    "editpipeline_circuit_breaker_rejected_total",
    "Total number of calls rejected without reaching the remote service",
    labelnames=["operation"],
)

CIRCUIT_BREAKER_STATE_CHANGES_TOTAL = Counter(
    "editpipeline_circuit_breaker_state_changes_total",
    "Total number of state transitions",
    labelnames=["operation", "from_state", "to_state"],
)


@dataclass(frozen=True, slots=True)
class CircuitBreakerConfig:
    """Configuration for circuit breaker behavior.

    Attributes:
        threshold: Failure ratio (0-1] over the outcome log that opens the circuit
        min_samples: Outcomes required before the ratio is evaluated
        window_size: Number of most recent outcomes kept in the log
        open_duration: Seconds to stay open before allowing a trial call
    """

    threshold: float = 0.5
    min_samples: int = 5
    window_size: int = 5
    open_duration: float = 15.0

    def __post_init__(self) -> None:
        if not 0.0 < self.threshold <= 1.0:
            raise ConfigurationError(f"threshold must be in (0, 1], got {self.threshold}")
        if self.min_samples < 1 or self.window_size < 1:
            raise ConfigurationError("min_samples and window_size must be positive")
        if self.min_samples > self.window_size:
            raise ConfigurationError(
                f"min_samples ({self.min_samples}) cannot exceed window_size ({self.window_size})"
            )
        if self.open_duration <= 0:
            raise ConfigurationError(f"open_duration must be positive, got {self.open_duration}")

    @classmethod
    def from_settings(cls, settings: Settings) -> CircuitBreakerConfig:
        return cls(
            threshold=settings.breaker_threshold,
            min_samples=settings.breaker_min_samples,
            window_size=settings.breaker_window_size,
            open_duration=settings.breaker_open_duration,
        )


@dataclass(frozen=True, slots=True)
class TrialToken:
    """Admission ticket returned by ``CircuitBreaker.allow``.

    ``is_trial`` marks the single half-open trial whose outcome decides
    whether the circuit closes or reopens.
    """

    operation: str
    is_trial: bool = False


class CircuitBreaker:
    """Failure-ratio circuit breaker for one remote operation."""

    def __init__(self, name: str, config: CircuitBreakerConfig | None = None) -> None:
        self._name = name
        self._config = config or CircuitBreakerConfig()

        self._state = CircuitState.CLOSED
        self._outcomes: deque[bool] = deque(maxlen=self._config.window_size)
        self._trial_in_flight = False

        self._opened_at: float | None = None
        self._last_state_change: datetime | None = None

        self._total_calls = 0
        self._rejected_calls = 0

        self._lock = asyncio.Lock()

        CIRCUIT_BREAKER_STATE.labels(operation=name).set(0)

        logger.info(
            f"CircuitBreaker '{name}' initialized: "
            f"threshold={self._config.threshold}, "
            f"min_samples={self._config.min_samples}, "
            f"window_size={self._config.window_size}, "
            f"open_duration={self._config.open_duration}s"
        )

    @property
    def name(self) -> str:
        return self._name

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_ratio(self) -> float:
        """Fraction of failures in the outcome log (0.0 when empty)."""
        if not self._outcomes:
            return 0.0
        return self._outcomes.count(False) / len(self._outcomes)

    async def allow(self) -> TrialToken:
        """Admit a call or reject it.

        Returns:
            TrialToken to pass back to ``record_outcome``

        Raises:
            CircuitOpenError: If the circuit is open, or half-open with a
                trial already in flight
        """
        async with self._lock:
            if self._state == CircuitState.OPEN and self._should_attempt_recovery():
                self._transition_to_half_open()

            if self._state == CircuitState.CLOSED:
                self._total_calls += 1
                return TrialToken(self._name)

            if self._state == CircuitState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                self._total_calls += 1
                logger.info(f"CircuitBreaker '{self._name}' admitting half-open trial call")
                return TrialToken(self._name, is_trial=True)

            self._rejected_calls += 1
            CIRCUIT_BREAKER_REJECTED_TOTAL.labels(operation=self._name).inc()
            raise CircuitOpenError(self._name, retry_after=self._retry_after())

    async def record_outcome(self, token: TrialToken, outcome: bool | None) -> None:
        """Record the outcome of an admitted call.

        Args:
            token: Token returned by ``allow``
            outcome: True for success, False for a service-health failure,
                None for a neutral outcome that says nothing about the service
        """
        async with self._lock:
            self.record_outcome_nowait(token, outcome)

    def record_outcome_nowait(self, token: TrialToken, outcome: bool | None) -> None:
        """Record an outcome without waiting for the lock.

        Safe on the event loop thread because it never suspends; used on
        cancellation paths where awaiting is not possible.
        """
        if token.is_trial:
            self._trial_in_flight = False
            if self._state == CircuitState.HALF_OPEN:
                if outcome is True:
                    self._transition_to_closed()
                elif outcome is False:
                    CIRCUIT_BREAKER_FAILURES_TOTAL.labels(operation=self._name).inc()
                    self._transition_to_open()
                else:
                    logger.debug(
                        f"CircuitBreaker '{self._name}' trial ended neutrally, next caller may try"
                    )
                return

        if outcome is None or self._state != CircuitState.CLOSED:
            # Late outcomes from calls admitted before the circuit opened do not
            # influence the open/half-open cycle.
            return

        self._outcomes.append(outcome)
        if not outcome:
            CIRCUIT_BREAKER_FAILURES_TOTAL.labels(operation=self._name).inc()
            logger.warning(
                f"CircuitBreaker '{self._name}' failure recorded: "
                f"ratio={self.failure_ratio:.2f} over {len(self._outcomes)} samples"
            )
            if (
                len(self._outcomes) >= self._config.min_samples
                and self.failure_ratio >= self._config.threshold
            ):
                self._transition_to_open()

    async def call[T](self, func: Callable[[], Awaitable[T]]) -> T:
        """Execute an async function with circuit breaker protection.

        1. Checks admission (raises CircuitOpenError if rejected)
        2. Executes the function
        3. Records success, failure, or a neutral outcome

        Raises:
            CircuitOpenError: If the circuit rejects the call
            Any exception raised by the function
        """
        token = await self.allow()
        try:
            result = await func()
        except PipelineError as e:
            await self.record_outcome(token, False if e.counts_as_failure else None)
            raise
        except BaseException:
            self.record_outcome_nowait(token, None)
            raise
        await self.record_outcome(token, True)
        return result

    def reset(self) -> None:
        """Manually reset circuit breaker to CLOSED state."""
        prev_state = self._state
        self._state = CircuitState.CLOSED
        self._outcomes.clear()
        self._trial_in_flight = False
        self._opened_at = None
        self._last_state_change = datetime.now(UTC)

        CIRCUIT_BREAKER_STATE.labels(operation=self._name).set(0)
        if prev_state != CircuitState.CLOSED:
            CIRCUIT_BREAKER_STATE_CHANGES_TOTAL.labels(
                operation=self._name,
                from_state=prev_state.value,
                to_state="closed",
            ).inc()

        logger.info(f"CircuitBreaker '{self._name}' manually reset to CLOSED")

    def _should_attempt_recovery(self) -> bool:
        if self._opened_at is None:
            return False
        return time.monotonic() - self._opened_at >= self._config.open_duration

    def _retry_after(self) -> float | None:
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return None
        return max(0.0, self._opened_at + self._config.open_duration - time.monotonic())

    def _set_state(self, new_state: CircuitState) -> CircuitState:
        prev_state = self._state
        self._state = new_state
        self._last_state_change = datetime.now(UTC)
        CIRCUIT_BREAKER_STATE.labels(operation=self._name).set(_STATE_GAUGE_VALUES[new_state])
        CIRCUIT_BREAKER_STATE_CHANGES_TOTAL.labels(
            operation=self._name,
            from_state=prev_state.value,
            to_state=new_state.value,
        ).inc()
        return prev_state

    def _transition_to_open(self) -> None:
        prev_state = self._set_state(CircuitState.OPEN)
        self._opened_at = time.monotonic()
        self._trial_in_flight = False
        logger.warning(
            f"CircuitBreaker '{self._name}' transitioned {prev_state.value} -> OPEN "
            f"(failure_ratio={self.failure_ratio:.2f}, threshold={self._config.threshold})"
        )

    def _transition_to_half_open(self) -> None:
        self._set_state(CircuitState.HALF_OPEN)
        self._trial_in_flight = False
        logger.info(
            f"CircuitBreaker '{self._name}' transitioned OPEN -> HALF_OPEN "
            f"(testing recovery after {self._config.open_duration}s)"
        )

    def _transition_to_closed(self) -> None:
        self._set_state(CircuitState.CLOSED)
        self._outcomes.clear()
        self._opened_at = None
        logger.info(
            f"CircuitBreaker '{self._name}' transitioned HALF_OPEN -> CLOSED (service recovered)"
        )

    def get_status(self) -> dict[str, Any]:
        """Get comprehensive state information for monitoring/debugging."""
        return {
            "name": self._name,
            "state": self._state.value,
            "failure_ratio": round(self.failure_ratio, 4),
            "samples": len(self._outcomes),
            "total_calls": self._total_calls,
            "rejected_calls": self._rejected_calls,
            "trial_in_flight": self._trial_in_flight,
            "retry_after": self._retry_after(),
            "config": {
                "threshold": self._config.threshold,
                "min_samples": self._config.min_samples,
                "window_size": self._config.window_size,
                "open_duration": self._config.open_duration,
            },
            "last_state_change": (
                self._last_state_change.isoformat() if self._last_state_change else None
            ),
        }

    def __str__(self) -> str:
        return f"CircuitBreaker({self._name}, state={self._state.value.upper()})"

    def __repr__(self) -> str:
        return (
            f"CircuitBreaker(name={self._name!r}, "
            f"state={self._state.value}, "
            f"failure_ratio={self.failure_ratio:.2f})"
        )
