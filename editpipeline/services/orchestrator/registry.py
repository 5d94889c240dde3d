"""Per-operation resilience components.

``ResilienceRegistry`` owns one ``RateLimiter`` and one ``CircuitBreaker``
per operation name, built lazily from ``Settings``. Each orchestrator creates
its own registry (or is handed one), so tests and independent pipelines never
share breaker state through module globals.

Usage:
    registry = ResilienceRegistry(settings)
    limiter = registry.rate_limiter("analyze")
    breaker = registry.circuit_breaker("analyze")
"""

from __future__ import annotations

from typing import Any

from editpipeline.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from editpipeline.core.config import Settings, get_settings
from editpipeline.core.logging import get_logger
from editpipeline.core.rate_limiter import RateLimiter

logger = get_logger(__name__)


class ResilienceRegistry:
    """Registry of rate limiters and circuit breakers keyed by operation name."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._breaker_config = CircuitBreakerConfig.from_settings(self._settings)
        self._limiters: dict[str, RateLimiter] = {}
        self._breakers: dict[str, CircuitBreaker] = {}

    def rate_limiter(self, operation: str) -> RateLimiter:
        """Get or create the rate limiter for an operation."""
        if operation not in self._limiters:
            self._limiters[operation] = RateLimiter.from_settings(operation, self._settings)
        return self._limiters[operation]

    def circuit_breaker(self, operation: str) -> CircuitBreaker:
        """Get or create the circuit breaker for an operation."""
        if operation not in self._breakers:
            self._breakers[operation] = CircuitBreaker(operation, self._breaker_config)
        return self._breakers[operation]

    def get_status(self) -> dict[str, Any]:
        """Get status of all limiters and breakers."""
        return {
            "rate_limiters": {
                name: limiter.get_status() for name, limiter in self._limiters.items()
            },
            "circuit_breakers": {
                name: breaker.get_status() for name, breaker in self._breakers.items()
            },
        }

    def reset(self) -> None:
        """Reset all circuit breakers to CLOSED state."""
        for breaker in self._breakers.values():
            breaker.reset()
        logger.info(f"Reset all {len(self._breakers)} circuit breakers")
