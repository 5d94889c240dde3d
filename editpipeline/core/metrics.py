"""Prometheus metrics definitions and utilities for observability.

This module defines the pipeline-level Prometheus metrics and helper functions
for recording them. Circuit breaker and retry metrics live next to their
implementations in ``circuit_breaker.py`` and ``retry.py``.

Metric Naming Conventions:
- All metrics are prefixed with 'editpipeline_'
- Counters end with '_total'
- Histograms/durations end with '_seconds'
- Gauges use descriptive names without suffix

Usage:
    from editpipeline.core.metrics import observe_stage_duration, record_pipeline_result

    observe_stage_duration("analyze", 1.25)
    record_pipeline_result("succeeded")
"""

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

_registry = REGISTRY

# =============================================================================
# Rate Limiter Metrics
# =============================================================================

RATE_LIMITER_SLOTS_IN_USE = Gauge(
    "editpipeline_rate_limiter_slots_in_use",
    "Number of concurrency slots currently held per operation",
    labelnames=["operation"],
    registry=_registry,
)

RATE_LIMITER_THROTTLED_TOTAL = Counter(
    "editpipeline_rate_limiter_throttled_total",
    "Total number of acquisitions that had to wait for a slot or the rate window",
    labelnames=["operation"],
    registry=_registry,
)

RATE_LIMITER_WAIT_BUCKETS = (0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0)

RATE_LIMITER_WAIT_SECONDS = Histogram(
    "editpipeline_rate_limiter_wait_seconds",
    "Time spent waiting to acquire a request slot",
    labelnames=["operation"],
    buckets=RATE_LIMITER_WAIT_BUCKETS,
    registry=_registry,
)

# =============================================================================
# Remote AI Request Metrics
# =============================================================================

AI_REQUEST_DURATION_BUCKETS = (0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0, 90.0)

AI_REQUEST_DURATION = Histogram(
    "editpipeline_ai_request_duration_seconds",
    "Duration of single remote AI calls (one attempt)",
    labelnames=["operation", "outcome"],
    buckets=AI_REQUEST_DURATION_BUCKETS,
    registry=_registry,
)

# =============================================================================
# Pipeline Metrics
# =============================================================================

STAGE_DURATION_BUCKETS = (0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0, 120.0, 180.0)

STAGE_DURATION_SECONDS = Histogram(
    "editpipeline_stage_duration_seconds",
    "Duration of pipeline stages including retries and slot waits",
    labelnames=["stage"],
    buckets=STAGE_DURATION_BUCKETS,
    registry=_registry,
)

PIPELINE_RESULTS_TOTAL = Counter(
    "editpipeline_pipeline_results_total",
    "Total number of pipeline requests by terminal status",
    labelnames=["status"],
    registry=_registry,
)

PIPELINE_ERRORS_TOTAL = Counter(
    "editpipeline_pipeline_errors_total",
    "Total number of failed pipeline requests by error kind",
    labelnames=["kind"],
    registry=_registry,
)

PIPELINES_IN_FLIGHT = Gauge(
    "editpipeline_pipelines_in_flight",
    "Number of pipeline requests currently running",
    registry=_registry,
)


# =============================================================================
# Helper Functions
# =============================================================================


def set_slots_in_use(operation: str, count: int) -> None:
    """Set the number of held concurrency slots for an operation."""
    RATE_LIMITER_SLOTS_IN_USE.labels(operation=operation).set(count)


def record_throttled(operation: str) -> None:
    """Increment the throttled acquisitions counter."""
    RATE_LIMITER_THROTTLED_TOTAL.labels(operation=operation).inc()


def observe_slot_wait(operation: str, wait_seconds: float) -> None:
    """Record how long an acquisition waited for a slot."""
    RATE_LIMITER_WAIT_SECONDS.labels(operation=operation).observe(wait_seconds)


def observe_ai_request_duration(operation: str, outcome: str, duration_seconds: float) -> None:
    """Record the duration of a single remote AI call.

    Args:
        operation: Remote operation ("analyze" or "generate")
        outcome: "success" or the error kind of the failed attempt
        duration_seconds: Duration in seconds
    """
    AI_REQUEST_DURATION.labels(operation=operation, outcome=outcome).observe(duration_seconds)


def observe_stage_duration(stage: str, duration_seconds: float) -> None:
    """Record the duration of a pipeline stage.

    Args:
        stage: Pipeline stage name ("analyze" or "generate")
        duration_seconds: Duration in seconds
    """
    STAGE_DURATION_SECONDS.labels(stage=stage).observe(duration_seconds)


def record_pipeline_result(status: str) -> None:
    """Increment the pipeline results counter for a terminal status."""
    PIPELINE_RESULTS_TOTAL.labels(status=status).inc()


def record_pipeline_error(kind: str) -> None:
    """Increment the pipeline errors counter.

    Args:
        kind: Error kind from the failure taxonomy (e.g., "timeout", "auth")
    """
    PIPELINE_ERRORS_TOTAL.labels(kind=kind).inc()


def get_metrics_response() -> bytes:
    """Generate the Prometheus metrics response.

    Returns:
        Bytes containing the metrics in Prometheus exposition format
    """
    return generate_latest(_registry)  # type: ignore[no-any-return]
