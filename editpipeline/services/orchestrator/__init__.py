"""Two-stage AI edit pipeline orchestration.

Import the public surface from here:

    from editpipeline.services.orchestrator import (
        # Orchestrator
        AIPipelineOrchestrator,
        PipelineRun,
        ResultSink,
        # Models
        PipelineRequest,
        PipelineSuccess,
        PipelineFailure,
        ProgressEvent,
        # Enums
        ProgressEventType,
        PipelineStatus,
        # Registry
        ResilienceRegistry,
    )

Modules in this package:
    enums: Stage, event type and status enums
    models: Request, result and progress event dataclasses
    registry: Per-operation rate limiters and circuit breakers
    events: Replayable per-request progress channel
    pipeline: The orchestrator and the run handle
"""

from editpipeline.services.orchestrator.enums import (
    ErrorKind,
    PipelineStage,
    PipelineStatus,
    ProgressEventType,
)
from editpipeline.services.orchestrator.events import ProgressChannel
from editpipeline.services.orchestrator.models import (
    PipelineFailure,
    PipelineRequest,
    PipelineResult,
    PipelineSuccess,
    ProgressEvent,
)
from editpipeline.services.orchestrator.pipeline import (
    AIPipelineOrchestrator,
    PipelineRun,
    ResultSink,
)
from editpipeline.services.orchestrator.registry import ResilienceRegistry

__all__ = [
    "AIPipelineOrchestrator",
    "ErrorKind",
    "PipelineFailure",
    "PipelineRequest",
    "PipelineResult",
    "PipelineRun",
    "PipelineStage",
    "PipelineStatus",
    "PipelineSuccess",
    "ProgressChannel",
    "ProgressEvent",
    "ProgressEventType",
    "ResilienceRegistry",
    "ResultSink",
]
