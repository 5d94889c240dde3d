"""Unit tests for the failure-ratio circuit breaker.

Tests cover:
- CircuitBreakerConfig defaults and validation
- CLOSED -> OPEN on failure ratio once min_samples is reached
- OPEN rejection without calling the protected function
- OPEN -> HALF_OPEN after open_duration with a single trial call
- Trial success, failure and neutral outcomes
- Neutral handling of client-side errors and cancellation
- Reset and status reporting
"""

import asyncio

import pytest

from editpipeline.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    TrialToken,
)
from editpipeline.core.exceptions import (
    CircuitOpenError,
    ConfigurationError,
    PipelineCancelledError,
    RemoteTimeoutError,
    TransientNetworkError,
    ValidationError,
)
from editpipeline.tests.mock_utils import create_test_settings

FAST_CONFIG = CircuitBreakerConfig(threshold=0.5, min_samples=5, window_size=5, open_duration=0.1)


async def succeed():
    return "ok"


async def fail_transient():
    raise TransientNetworkError("503")


async def trip(breaker: CircuitBreaker, failures: int = 5) -> None:
    for _ in range(failures):
        with pytest.raises(TransientNetworkError):
            await breaker.call(fail_transient)


class TestCircuitBreakerConfig:
    """Tests for CircuitBreakerConfig dataclass."""

    def test_default_values(self) -> None:
        """Test default configuration values."""
        config = CircuitBreakerConfig()
        assert config.threshold == 0.5
        assert config.min_samples == 5
        assert config.window_size == 5
        assert config.open_duration == 15.0

    def test_from_settings(self) -> None:
        """Test config is built from Settings."""
        settings = create_test_settings(
            breaker_threshold=0.6,
            breaker_min_samples=3,
            breaker_window_size=10,
            breaker_open_duration=30.0,
        )
        assert CircuitBreakerConfig.from_settings(settings) == CircuitBreakerConfig(
            threshold=0.6, min_samples=3, window_size=10, open_duration=30.0
        )

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"threshold": 0.0},
            {"threshold": 1.5},
            {"min_samples": 6, "window_size": 5},
            {"open_duration": 0},
        ],
    )
    def test_invalid_values_rejected(self, kwargs) -> None:
        """Test invalid configurations raise ConfigurationError."""
        with pytest.raises(ConfigurationError):
            CircuitBreakerConfig(**kwargs)


class TestCircuitState:
    """Tests for CircuitState enum."""

    def test_state_values(self) -> None:
        """Test circuit state enum values."""
        assert CircuitState.CLOSED.value == "closed"
        assert CircuitState.OPEN.value == "open"
        assert CircuitState.HALF_OPEN.value == "half_open"


class TestClosedState:
    """Tests for failure accounting while CLOSED."""

    async def test_starts_closed(self) -> None:
        """Test a new breaker is closed with an empty log."""
        breaker = CircuitBreaker("analyze", FAST_CONFIG)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_ratio == 0.0

    async def test_stays_closed_below_min_samples(self) -> None:
        """Test four failures are not enough when min_samples is five."""
        breaker = CircuitBreaker("analyze", FAST_CONFIG)
        await trip(breaker, failures=4)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_ratio == 1.0

    async def test_opens_after_five_failures_and_rejects_without_calling(self) -> None:
        """Test five consecutive failures open the circuit and the next call never runs."""
        breaker = CircuitBreaker("analyze", FAST_CONFIG)
        calls = 0

        async def failing():
            nonlocal calls
            calls += 1
            raise TransientNetworkError("503")

        for _ in range(5):
            with pytest.raises(TransientNetworkError):
                await breaker.call(failing)

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.call(failing)
        assert calls == 5
        assert exc_info.value.retry_after is not None

    async def test_ratio_threshold_with_mixed_outcomes(self) -> None:
        """Test three failures out of five samples reach a 0.5 threshold."""
        breaker = CircuitBreaker("analyze", FAST_CONFIG)
        await breaker.call(succeed)
        await breaker.call(succeed)
        await trip(breaker, failures=3)
        assert breaker.failure_ratio == pytest.approx(0.6)
        assert breaker.state == CircuitState.OPEN

    async def test_stays_closed_below_threshold(self) -> None:
        """Test two failures out of five stay below a 0.5 threshold."""
        breaker = CircuitBreaker("analyze", FAST_CONFIG)
        await trip(breaker, failures=2)
        for _ in range(3):
            await breaker.call(succeed)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_ratio == pytest.approx(0.4)

    async def test_oldest_outcomes_evicted(self) -> None:
        """Test the outcome log keeps only window_size entries."""
        breaker = CircuitBreaker("analyze", FAST_CONFIG)
        await trip(breaker, failures=2)
        for _ in range(5):
            await breaker.call(succeed)
        assert breaker.failure_ratio == 0.0
        assert breaker.get_status()["samples"] == 5

    @pytest.mark.parametrize(
        "error",
        [ValidationError("bad input"), PipelineCancelledError()],
        ids=["validation", "cancelled"],
    )
    async def test_neutral_errors_not_counted(self, error) -> None:
        """Test client-side errors and cancellation say nothing about service health."""
        breaker = CircuitBreaker("analyze", FAST_CONFIG)

        async def raising():
            raise error

        for _ in range(10):
            with pytest.raises(type(error)):
                await breaker.call(raising)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.get_status()["samples"] == 0

    async def test_task_cancellation_is_neutral(self) -> None:
        """Test asyncio cancellation of a protected call records nothing."""
        breaker = CircuitBreaker("analyze", FAST_CONFIG)
        task = asyncio.create_task(breaker.call(lambda: asyncio.sleep(10)))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert breaker.get_status()["samples"] == 0


class TestHalfOpen:
    """Tests for recovery probing."""

    async def test_transitions_to_half_open_after_open_duration(self) -> None:
        """Test the first call after open_duration becomes the trial."""
        breaker = CircuitBreaker("analyze", FAST_CONFIG)
        await trip(breaker)
        await asyncio.sleep(0.12)

        token = await breaker.allow()
        assert token.is_trial
        assert breaker.state == CircuitState.HALF_OPEN

    async def test_only_one_trial_call(self) -> None:
        """Test concurrent callers in HALF_OPEN are rejected while the trial is in flight."""
        breaker = CircuitBreaker("analyze", FAST_CONFIG)
        await trip(breaker)
        await asyncio.sleep(0.12)

        release = asyncio.Event()
        trial_calls = 0

        async def slow_success():
            nonlocal trial_calls
            trial_calls += 1
            await release.wait()
            return "ok"

        trial = asyncio.create_task(breaker.call(slow_success))
        await asyncio.sleep(0.01)

        results = await asyncio.gather(
            *(breaker.call(slow_success) for _ in range(5)), return_exceptions=True
        )
        assert all(isinstance(r, CircuitOpenError) for r in results)
        assert trial_calls == 1

        release.set()
        assert await trial == "ok"
        assert breaker.state == CircuitState.CLOSED

    async def test_concurrent_allow_yields_single_trial(self) -> None:
        """Test racing allow() calls cannot both win the trial."""
        breaker = CircuitBreaker("analyze", FAST_CONFIG)
        await trip(breaker)
        await asyncio.sleep(0.12)

        results = await asyncio.gather(*(breaker.allow() for _ in range(10)), return_exceptions=True)
        trials = [r for r in results if isinstance(r, TrialToken)]
        assert len(trials) == 1
        assert sum(isinstance(r, CircuitOpenError) for r in results) == 9

    async def test_trial_success_closes_and_clears_log(self) -> None:
        """Test a successful trial closes the circuit and forgets old failures."""
        breaker = CircuitBreaker("analyze", FAST_CONFIG)
        await trip(breaker)
        await asyncio.sleep(0.12)

        assert await breaker.call(succeed) == "ok"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_ratio == 0.0

    async def test_trial_failure_reopens(self) -> None:
        """Test a failed trial reopens the circuit and restarts the open timer."""
        breaker = CircuitBreaker("analyze", FAST_CONFIG)
        await trip(breaker)
        await asyncio.sleep(0.12)

        with pytest.raises(RemoteTimeoutError):

            async def timing_out():
                raise RemoteTimeoutError()

            await breaker.call(timing_out)

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            await breaker.allow()

    async def test_neutral_trial_frees_trial_slot(self) -> None:
        """Test a neutral trial outcome keeps HALF_OPEN and admits the next caller."""
        breaker = CircuitBreaker("analyze", FAST_CONFIG)
        await trip(breaker)
        await asyncio.sleep(0.12)

        token = await breaker.allow()
        await breaker.record_outcome(token, None)
        assert breaker.state == CircuitState.HALF_OPEN

        next_token = await breaker.allow()
        assert next_token.is_trial


class TestResetAndStatus:
    """Tests for reset() and introspection."""

    async def test_reset_closes(self) -> None:
        """Test reset returns an open breaker to CLOSED with an empty log."""
        breaker = CircuitBreaker("analyze", FAST_CONFIG)
        await trip(breaker)
        breaker.reset()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_ratio == 0.0
        assert await breaker.call(succeed) == "ok"

    async def test_get_status(self) -> None:
        """Test the status dictionary reports state, counters and config."""
        breaker = CircuitBreaker("generate", FAST_CONFIG)
        await trip(breaker)
        with pytest.raises(CircuitOpenError):
            await breaker.allow()

        status = breaker.get_status()
        assert status["name"] == "generate"
        assert status["state"] == "open"
        assert status["failure_ratio"] == 1.0
        assert status["total_calls"] == 5
        assert status["rejected_calls"] == 1
        assert status["config"]["min_samples"] == 5
        assert status["last_state_change"] is not None

    def test_str_and_repr(self) -> None:
        """Test string representations include name and state."""
        breaker = CircuitBreaker("analyze", FAST_CONFIG)
        assert str(breaker) == "CircuitBreaker(analyze, state=CLOSED)"
        assert "name='analyze'" in repr(breaker)
