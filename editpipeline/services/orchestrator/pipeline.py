"""Two-stage AI edit pipeline orchestrator.

Workflow for one request:

    QUEUED
      -> preflight validation (no slot taken, no remote call)
      -> [analyze]  RATE_LIMITED? -> ANALYZING -> RETRYING* -> ANALYSIS_COMPLETE
      -> [generate] RATE_LIMITED? -> GENERATING -> RETRYING* -> GENERATION_COMPLETE
    or at any point -> FAILED / CANCELLED

Each stage holds a rate limiter slot for its whole duration, including
backoff between retries. Every attempt is admitted by the stage's circuit
breaker, so an open circuit fails the stage immediately with
SERVICE_UNAVAILABLE instead of burning retries.

The whole request runs under a ``CancellationToken`` linked to the caller's
token and bounded by the request deadline (or ``pipeline_timeout``). Every
wait observes it, so cancellation returns promptly and never leaves a slot
held.

Usage:
    orchestrator = AIPipelineOrchestrator(client, settings=settings)

    # Fire and observe
    run = orchestrator.start(PipelineRequest.create(image, mask))
    async for event in run.events():
        print(event.type, event.stage)
    result = await run.result()

    # Or inline
    result = await orchestrator.run(request, on_event=handle_event)
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from editpipeline.core.cancellation import CancellationToken
from editpipeline.core.config import Settings, get_settings
from editpipeline.core.exceptions import ErrorKind, PipelineError
from editpipeline.core.logging import (
    get_logger,
    get_request_id,
    sanitize_error,
    set_request_id,
)
from editpipeline.core.metrics import (
    PIPELINES_IN_FLIGHT,
    observe_stage_duration,
    record_pipeline_error,
    record_pipeline_result,
)
from editpipeline.core.retry import RetryConfig, RetryPolicy, RetryResult
from editpipeline.services.orchestrator.enums import PipelineStage, ProgressEventType
from editpipeline.services.orchestrator.events import ProgressChannel
from editpipeline.services.orchestrator.models import (
    PipelineFailure,
    PipelineRequest,
    PipelineResult,
    PipelineSuccess,
    ProgressEvent,
)
from editpipeline.services.orchestrator.registry import ResilienceRegistry

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

    from editpipeline.services.remote_ai_client import RemoteAIClient

logger = get_logger(__name__)

_RUNNING_EVENT = {
    PipelineStage.ANALYZE: ProgressEventType.ANALYZING,
    PipelineStage.GENERATE: ProgressEventType.GENERATING,
}


class ResultSink(Protocol):
    """Persistence collaborator receiving every terminal result."""

    async def save(self, result: PipelineResult) -> None: ...


@dataclass(slots=True)
class _RunState:
    stage: PipelineStage | None = None
    attempts: int = 0


class PipelineRun:
    """Handle to a pipeline request running as its own task."""

    def __init__(
        self,
        request: PipelineRequest,
        task: asyncio.Task[PipelineResult],
        channel: ProgressChannel,
        token: CancellationToken,
    ) -> None:
        self._request = request
        self._task = task
        self._channel = channel
        self._token = token

    @property
    def request_id(self) -> str:
        return self._request.request_id

    @property
    def request(self) -> PipelineRequest:
        return self._request

    @property
    def token(self) -> CancellationToken:
        return self._token

    def events(self) -> AsyncIterator[ProgressEvent]:
        """Fresh event iterator replaying from the first event."""
        return self._channel.subscribe()

    async def result(self) -> PipelineResult:
        """Wait for the terminal result.

        Cancelling the awaiting task does not cancel the pipeline; use
        ``cancel`` for that.
        """
        return await asyncio.shield(self._task)

    def cancel(self, reason: str = "cancelled by caller") -> bool:
        return self._token.cancel(reason)

    def done(self) -> bool:
        return self._task.done()

    def __repr__(self) -> str:
        return f"PipelineRun(request_id={self.request_id!r}, done={self.done()})"


class AIPipelineOrchestrator:
    """Composes rate limiting, circuit breaking and retries around a RemoteAIClient."""

    def __init__(
        self,
        client: RemoteAIClient,
        registry: ResilienceRegistry | None = None,
        settings: Settings | None = None,
        result_sink: ResultSink | None = None,
    ) -> None:
        self._client = client
        self._settings = settings or get_settings()
        self._registry = registry or ResilienceRegistry(self._settings)
        self._retry_policy = RetryPolicy(RetryConfig.from_settings(self._settings))
        self._result_sink = result_sink
        self._runs: set[PipelineRun] = set()

    @property
    def registry(self) -> ResilienceRegistry:
        return self._registry

    @property
    def active_runs(self) -> int:
        return len(self._runs)

    def start(self, request: PipelineRequest, token: CancellationToken | None = None) -> PipelineRun:
        """Schedule a request as an independent task and return its handle."""
        channel = ProgressChannel(request.request_id)
        request_token = self._request_token(request, token)
        task = asyncio.create_task(
            self._execute(request, request_token, channel),
            name=f"pipeline-{request.request_id}",
        )
        run = PipelineRun(request, task, channel, request_token)
        self._runs.add(run)
        task.add_done_callback(lambda _: self._runs.discard(run))
        return run

    async def run(
        self,
        request: PipelineRequest,
        token: CancellationToken | None = None,
        on_event: Callable[[ProgressEvent], None] | None = None,
    ) -> PipelineResult:
        """Run a request in the current task and return its result.

        Cancelling the current task cancels the request; the CANCELLED event
        is emitted and the sink notified before CancelledError propagates.
        """
        channel = ProgressChannel(request.request_id, on_event)
        previous_request_id = get_request_id()
        try:
            return await self._execute(request, self._request_token(request, token), channel)
        finally:
            set_request_id(previous_request_id)

    async def shutdown(self, reason: str = "orchestrator shutting down") -> None:
        """Cancel all started runs and wait for their results."""
        runs = list(self._runs)
        for run in runs:
            run.cancel(reason)
        if runs:
            await asyncio.gather(*(run.result() for run in runs), return_exceptions=True)

    def _request_token(
        self, request: PipelineRequest, parent: CancellationToken | None
    ) -> CancellationToken:
        timeout = request.seconds_until_deadline()
        if timeout is None:
            timeout = self._settings.pipeline_timeout
        timeout = max(0.0, timeout)
        if parent is not None:
            return parent.child(timeout=timeout)
        return CancellationToken(timeout=timeout)

    async def _execute(
        self,
        request: PipelineRequest,
        token: CancellationToken,
        channel: ProgressChannel,
    ) -> PipelineResult:
        set_request_id(request.request_id)
        started = time.monotonic()
        state = _RunState()
        result: PipelineResult
        PIPELINES_IN_FLIGHT.inc()

        logger.info(
            "Pipeline request started",
            extra={
                "image_bytes": len(request.image),
                "has_mask": request.mask is not None,
                "has_prompt": request.prompt is not None,
            },
        )

        try:
            channel.emit(ProgressEventType.QUEUED)
            self._client.validate_request(request.image, request.mask, request.prompt)
            token.raise_if_cancelled()

            analysis = await self._run_stage(
                PipelineStage.ANALYZE,
                token,
                channel,
                state,
                lambda: self._client.analyze(
                    request.image, token=token, timeout=self._settings.analyze_timeout
                ),
            )
            channel.emit(ProgressEventType.ANALYSIS_COMPLETE, stage=PipelineStage.ANALYZE)

            prompt = request.prompt or analysis.value
            generation = await self._run_stage(
                PipelineStage.GENERATE,
                token,
                channel,
                state,
                lambda: self._client.generate(
                    request.image,
                    request.mask,
                    prompt,
                    token=token,
                    timeout=self._settings.generate_timeout,
                ),
            )

            result = PipelineSuccess(
                request_id=request.request_id,
                analysis_text=analysis.value,
                generated_image=generation.value,
                elapsed=time.monotonic() - started,
                analysis_attempts=analysis.attempts,
                generation_attempts=generation.attempts,
            )
            channel.emit(ProgressEventType.GENERATION_COMPLETE, stage=PipelineStage.GENERATE)

        except PipelineError as e:
            result = self._failure(
                request, e.kind, e.message, state.attempts, state, started
            )
            self._emit_terminal(channel, result)

        except asyncio.CancelledError:
            token.cancel("pipeline task cancelled")
            result = self._failure(
                request, ErrorKind.CANCELLED, "Pipeline task cancelled", state.attempts, state, started
            )
            self._emit_terminal(channel, result)
            await self._finish(result, channel)
            raise

        except Exception as e:
            logger.error(f"Unexpected pipeline error: {sanitize_error(e)}", exc_info=True)
            result = self._failure(
                request,
                ErrorKind.INTERNAL,
                f"Internal error: {sanitize_error(e, max_length=200)}",
                state.attempts,
                state,
                started,
            )
            self._emit_terminal(channel, result)

        await self._finish(result, channel)
        return result

    async def _run_stage[T](
        self,
        stage: PipelineStage,
        token: CancellationToken,
        channel: ProgressChannel,
        state: _RunState,
        call: Callable[[], Awaitable[T]],
    ) -> RetryResult[T]:
        state.stage = stage
        state.attempts = 0
        limiter = self._registry.rate_limiter(stage.value)
        breaker = self._registry.circuit_breaker(stage.value)
        stage_started = time.monotonic()

        def on_throttled(wait: float | None) -> None:
            if wait is None:
                message = "Waiting for a free request slot"
            else:
                message = f"Rate limit reached, waiting {wait:.1f}s"
            channel.emit(ProgressEventType.RATE_LIMITED, stage=stage, message=message)

        def on_retry(next_attempt: int, error: PipelineError, delay: float) -> None:
            channel.emit(
                ProgressEventType.RETRYING,
                stage=stage,
                attempt=next_attempt,
                message=f"{error.kind.value}, retrying in {delay:.1f}s",
            )

        async def admitted() -> T:
            state.attempts += 1
            return await call()

        async def attempt() -> T:
            return await breaker.call(admitted)

        async with limiter.slot(token, on_throttled):
            channel.emit(_RUNNING_EVENT[stage], stage=stage)
            result = await self._retry_policy.execute(
                token, attempt, operation=stage.value, on_retry=on_retry
            )

        duration = time.monotonic() - stage_started
        observe_stage_duration(stage.value, duration)
        logger.info(
            f"Stage {stage.value} completed in {duration:.2f}s after {result.attempts} attempt(s)",
            extra={"stage": stage.value, "attempts": result.attempts},
        )
        return result

    def _failure(
        self,
        request: PipelineRequest,
        kind: ErrorKind,
        message: str,
        attempts: int,
        state: _RunState,
        started: float,
    ) -> PipelineFailure:
        return PipelineFailure(
            request_id=request.request_id,
            kind=kind,
            message=sanitize_error(message),
            attempts=attempts,
            elapsed=time.monotonic() - started,
            stage=state.stage,
        )

    def _emit_terminal(self, channel: ProgressChannel, result: PipelineFailure) -> None:
        event_type = (
            ProgressEventType.CANCELLED
            if result.kind == ErrorKind.CANCELLED
            else ProgressEventType.FAILED
        )
        channel.emit(event_type, stage=result.stage, message=result.message)

    async def _finish(self, result: PipelineResult, channel: ProgressChannel) -> None:
        channel.close()
        PIPELINES_IN_FLIGHT.dec()
        record_pipeline_result(result.status.value)

        log_extra: dict[str, Any] = {
            "status": result.status.value,
            "attempts": result.attempts,
            "elapsed": round(result.elapsed, 3),
        }
        if isinstance(result, PipelineFailure):
            record_pipeline_error(result.kind.value)
            logger.warning(
                f"Pipeline request {result.status.value}: {result.kind.value} - {result.message}",
                extra=log_extra,
            )
        else:
            logger.info(
                f"Pipeline request succeeded in {result.elapsed:.2f}s",
                extra=log_extra,
            )

        if self._result_sink is None:
            return
        try:
            await self._result_sink.save(result)
        except Exception as e:
            logger.error(f"Result sink failed to save result: {sanitize_error(e)}", exc_info=True)
