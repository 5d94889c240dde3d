"""Core infrastructure components."""

from editpipeline.core.cancellation import CancellationToken
from editpipeline.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    TrialToken,
)
from editpipeline.core.config import Settings, get_settings
from editpipeline.core.logging import (
    get_logger,
    get_request_id,
    sanitize_error,
    set_request_id,
    setup_logging,
)
from editpipeline.core.rate_limiter import RateLimiter, RequestSlot
from editpipeline.core.retry import RetryConfig, RetryPolicy, RetryResult, calculate_delay

__all__ = [
    "CancellationToken",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "RateLimiter",
    "RequestSlot",
    "RetryConfig",
    "RetryPolicy",
    "RetryResult",
    "Settings",
    "TrialToken",
    "calculate_delay",
    "get_logger",
    "get_request_id",
    "get_settings",
    "sanitize_error",
    "set_request_id",
    "setup_logging",
]
