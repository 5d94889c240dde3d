"""Shared enums for the edit pipeline orchestrator.

- PipelineStage: The two remote stages, also used as operation names for the
  per-operation rate limiters and circuit breakers
- ProgressEventType: Observable pipeline phases
- PipelineStatus: Terminal status of a pipeline result

``ErrorKind`` is re-exported from ``editpipeline.core.exceptions``.
"""

from enum import StrEnum

from editpipeline.core.exceptions import ErrorKind


class PipelineStage(StrEnum):
    """Remote stages of the pipeline."""

    ANALYZE = "analyze"
    GENERATE = "generate"


class ProgressEventType(StrEnum):
    """Progress events emitted while a request moves through the pipeline."""

    QUEUED = "queued"
    RATE_LIMITED = "rate_limited"
    ANALYZING = "analyzing"
    ANALYSIS_COMPLETE = "analysis_complete"
    GENERATING = "generating"
    GENERATION_COMPLETE = "generation_complete"
    RETRYING = "retrying"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """True for the last event a request can emit."""
        return self in (
            ProgressEventType.GENERATION_COMPLETE,
            ProgressEventType.FAILED,
            ProgressEventType.CANCELLED,
        )


class PipelineStatus(StrEnum):
    """Terminal status of a pipeline request."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


__all__ = [
    "ErrorKind",
    "PipelineStage",
    "PipelineStatus",
    "ProgressEventType",
]
