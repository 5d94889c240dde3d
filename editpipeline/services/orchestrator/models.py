"""Data models for pipeline requests, results and progress events.

Classes:
    PipelineRequest: Immutable input of one pipeline invocation
    PipelineSuccess: Result of a request that completed both stages
    PipelineFailure: Result of a request that failed or was cancelled
    ProgressEvent: One observable step of a request
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from editpipeline.core.exceptions import ErrorKind
from editpipeline.services.orchestrator.enums import (
    PipelineStage,
    PipelineStatus,
    ProgressEventType,
)


@dataclass(frozen=True, slots=True)
class PipelineRequest:
    """A single pipeline invocation.

    Attributes:
        request_id: Unique id (uuid4 hex) used for events, logs and results
        image: Encoded source image bytes
        mask: Optional encoded mask marking the area to edit
        prompt: Optional prompt that overrides the analysis text for generation
        created_at: Creation time (UTC)
        deadline: Optional absolute deadline for the whole request (UTC)
    """

    request_id: str
    image: bytes = field(repr=False)
    mask: bytes | None = field(default=None, repr=False)
    prompt: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    deadline: datetime | None = None

    @classmethod
    def create(
        cls,
        image: bytes,
        mask: bytes | None = None,
        prompt: str | None = None,
        timeout: float | None = None,
    ) -> PipelineRequest:
        """Build a request with a fresh id and an optional relative deadline."""
        created_at = datetime.now(UTC)
        deadline = created_at + timedelta(seconds=timeout) if timeout is not None else None
        return cls(
            request_id=uuid.uuid4().hex,
            image=image,
            mask=mask,
            prompt=prompt,
            created_at=created_at,
            deadline=deadline,
        )

    def seconds_until_deadline(self) -> float | None:
        if self.deadline is None:
            return None
        return (self.deadline - datetime.now(UTC)).total_seconds()


@dataclass(frozen=True, slots=True)
class PipelineSuccess:
    """Both stages completed."""

    request_id: str
    analysis_text: str
    generated_image: bytes = field(repr=False)
    elapsed: float
    analysis_attempts: int = 1
    generation_attempts: int = 1

    @property
    def status(self) -> PipelineStatus:
        return PipelineStatus.SUCCEEDED

    @property
    def attempts(self) -> int:
        """Largest attempt count of either stage (1 for a clean run)."""
        return max(self.analysis_attempts, self.generation_attempts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "status": self.status.value,
            "analysis_text": self.analysis_text,
            "generated_image_bytes": len(self.generated_image),
            "elapsed": round(self.elapsed, 3),
            "analysis_attempts": self.analysis_attempts,
            "generation_attempts": self.generation_attempts,
        }


@dataclass(frozen=True, slots=True)
class PipelineFailure:
    """The request failed or was cancelled.

    Attributes:
        kind: Failure taxonomy entry
        message: Sanitized, human-readable reason
        attempts: Attempts made in the stage that failed (0 if none started)
        elapsed: Seconds from start to the terminal event
        stage: Stage that was running, or None if it failed before any stage
    """

    request_id: str
    kind: ErrorKind
    message: str
    attempts: int
    elapsed: float
    stage: PipelineStage | None = None

    @property
    def status(self) -> PipelineStatus:
        if self.kind == ErrorKind.CANCELLED:
            return PipelineStatus.CANCELLED
        return PipelineStatus.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "status": self.status.value,
            "kind": self.kind.value,
            "message": self.message,
            "attempts": self.attempts,
            "elapsed": round(self.elapsed, 3),
            "stage": self.stage.value if self.stage else None,
        }


type PipelineResult = PipelineSuccess | PipelineFailure


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    """One step of a request's progress.

    ``sequence`` strictly increases per request; ``attempt`` is set on
    RETRYING events (the attempt about to start).
    """

    request_id: str
    type: ProgressEventType
    sequence: int
    stage: PipelineStage | None = None
    attempt: int | None = None
    message: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "type": self.type.value,
            "sequence": self.sequence,
            "stage": self.stage.value if self.stage else None,
            "attempt": self.attempt,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }
