"""Progress event channel for a single pipeline request.

The pipeline task is the only producer. Every event is stored, so each
subscriber replays the request's progress from the first event and then
follows it live until the terminal event. A subscriber that starts after the
request finished still sees the full sequence.

Ordering guarantees (per request):
    - ``sequence`` strictly increases
    - Phases never move backwards: QUEUED, then per stage RATE_LIMITED?,
      ANALYZING/GENERATING, RETRYING*, *_COMPLETE, and finally FAILED or
      CANCELLED if the request did not succeed
"""

from __future__ import annotations

import asyncio
import itertools
from typing import TYPE_CHECKING

from editpipeline.core.logging import get_logger, sanitize_error
from editpipeline.services.orchestrator.enums import PipelineStage, ProgressEventType
from editpipeline.services.orchestrator.models import ProgressEvent

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

logger = get_logger(__name__)

_STAGE_PHASES: dict[PipelineStage, dict[ProgressEventType, int]] = {
    PipelineStage.ANALYZE: {
        ProgressEventType.RATE_LIMITED: 1,
        ProgressEventType.ANALYZING: 2,
        ProgressEventType.RETRYING: 3,
        ProgressEventType.ANALYSIS_COMPLETE: 4,
    },
    PipelineStage.GENERATE: {
        ProgressEventType.RATE_LIMITED: 5,
        ProgressEventType.GENERATING: 6,
        ProgressEventType.RETRYING: 7,
        ProgressEventType.GENERATION_COMPLETE: 8,
    },
}
_TERMINAL_PHASE = 9


def _phase(event_type: ProgressEventType, stage: PipelineStage | None) -> int:
    if event_type == ProgressEventType.QUEUED:
        return 0
    if event_type in (ProgressEventType.FAILED, ProgressEventType.CANCELLED):
        return _TERMINAL_PHASE
    if stage is None or event_type not in _STAGE_PHASES[stage]:
        raise ValueError(f"{event_type.value} event requires a matching stage, got {stage}")
    return _STAGE_PHASES[stage][event_type]


class ProgressChannel:
    """Ordered, replayable event stream for one request."""

    def __init__(
        self,
        request_id: str,
        on_event: Callable[[ProgressEvent], None] | None = None,
    ) -> None:
        self._request_id = request_id
        self._on_event = on_event
        self._history: list[ProgressEvent] = []
        self._sequence = itertools.count()
        self._last_phase = 0
        self._closed = False
        self._changed = asyncio.Event()

    @property
    def history(self) -> tuple[ProgressEvent, ...]:
        return tuple(self._history)

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(
        self,
        event_type: ProgressEventType,
        *,
        stage: PipelineStage | None = None,
        attempt: int | None = None,
        message: str | None = None,
    ) -> ProgressEvent:
        """Append an event and wake subscribers.

        Raises:
            RuntimeError: If the channel is closed or the event would move
                the request to an earlier phase
        """
        if self._closed:
            raise RuntimeError(f"Progress channel for {self._request_id} is closed")

        phase = _phase(event_type, stage)
        if phase < self._last_phase:
            raise RuntimeError(
                f"Out-of-order progress event {event_type.value} for {self._request_id}"
            )
        self._last_phase = phase

        event = ProgressEvent(
            request_id=self._request_id,
            type=event_type,
            sequence=next(self._sequence),
            stage=stage,
            attempt=attempt,
            message=message,
        )
        self._history.append(event)
        logger.debug(
            f"Progress {event.sequence}: {event_type.value}",
            extra={"stage": stage.value if stage else None, "attempt": attempt},
        )

        if self._on_event is not None:
            try:
                self._on_event(event)
            except Exception as e:
                # A broken consumer must not fail the request it is observing
                logger.error(f"Progress callback failed: {sanitize_error(e)}", exc_info=True)

        self._wake()
        return event

    def close(self) -> None:
        """End the stream; subscribers stop after the remaining history."""
        self._closed = True
        self._wake()

    def _wake(self) -> None:
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()

    async def subscribe(self) -> AsyncIterator[ProgressEvent]:
        """Yield every event from the first, then follow live until the end."""
        index = 0
        while True:
            while index < len(self._history):
                event = self._history[index]
                index += 1
                yield event
                if event.type.is_terminal:
                    return
            if self._closed:
                return
            await self._changed.wait()
