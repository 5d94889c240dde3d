"""Abstract client for the remote AI analysis/generation service.

``RemoteAIClient`` owns everything that is the same regardless of transport:

- Boundary validation before any network use (empty image, oversized
  image or mask, blank prompt)
- Per-call timeouts bounded by the caller's deadline
- Cancellation through the caller's ``CancellationToken``
- Rejection of empty results

Concrete clients implement ``_analyze`` and ``_generate`` and are expected to
raise only ``PipelineError`` subclasses.

Error Handling:
    - Per-call timeout expiry: RemoteTimeoutError (retryable)
    - Caller deadline expiry: DeadlineExceededError (fatal)
    - Caller cancellation: PipelineCancelledError (fatal)
    - Empty analysis text / empty image bytes: InvalidResponseError (retryable)
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from editpipeline.core.config import DEFAULT_MAX_PAYLOAD_BYTES
from editpipeline.core.exceptions import (
    InvalidResponseError,
    PayloadTooLargeError,
    PipelineError,
    RemoteTimeoutError,
    ValidationError,
)
from editpipeline.core.logging import get_logger
from editpipeline.core.metrics import observe_ai_request_duration

if TYPE_CHECKING:
    from collections.abc import Coroutine

    from editpipeline.core.cancellation import CancellationToken

logger = get_logger(__name__)

DEFAULT_ANALYZE_TIMEOUT = 30.0
DEFAULT_GENERATE_TIMEOUT = 60.0


class RemoteAIClient(ABC):
    """Base class for remote AI service clients."""

    def __init__(
        self,
        *,
        max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES,
        analyze_timeout: float = DEFAULT_ANALYZE_TIMEOUT,
        generate_timeout: float = DEFAULT_GENERATE_TIMEOUT,
    ) -> None:
        self._max_payload_bytes = max_payload_bytes
        self._analyze_timeout = analyze_timeout
        self._generate_timeout = generate_timeout

    @property
    def max_payload_bytes(self) -> int:
        return self._max_payload_bytes

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_image(self, image: bytes, field: str = "image") -> None:
        """Reject missing, empty, or oversized image payloads.

        Raises:
            ValidationError: If the payload is empty
            PayloadTooLargeError: If it exceeds ``max_payload_bytes``
        """
        if not image:
            raise ValidationError(f"{field} is empty", details={"field": field})
        if len(image) > self._max_payload_bytes:
            raise PayloadTooLargeError(
                field=field, size=len(image), limit=self._max_payload_bytes
            )

    def validate_prompt(self, prompt: str | None) -> None:
        if prompt is None or not prompt.strip():
            raise ValidationError("prompt is empty", details={"field": "prompt"})

    def validate_request(
        self, image: bytes, mask: bytes | None = None, prompt: str | None = None
    ) -> None:
        """Validate a full pipeline input without contacting the service.

        ``prompt`` is optional here because the analysis stage supplies one
        when the caller does not; an explicitly blank override is rejected.
        """
        self.validate_image(image, "image")
        if mask is not None:
            self.validate_image(mask, "mask")
        if prompt is not None:
            self.validate_prompt(prompt)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def analyze(
        self,
        image: bytes,
        *,
        token: CancellationToken,
        timeout: float | None = None,
    ) -> str:
        """Describe the image and produce a generation prompt.

        Returns:
            Non-empty analysis text

        Raises:
            PipelineError: Classified failure (see module docstring)
        """
        self.validate_image(image, "image")
        text = await self._invoke(
            "analyze", self._analyze(image), token, timeout or self._analyze_timeout
        )
        if not isinstance(text, str) or not text.strip():
            raise InvalidResponseError("AI service returned empty analysis text")
        return text.strip()

    async def generate(
        self,
        image: bytes,
        mask: bytes | None,
        prompt: str,
        *,
        token: CancellationToken,
        timeout: float | None = None,
    ) -> bytes:
        """Generate an edited image from the source image, mask and prompt.

        Returns:
            Non-empty encoded image bytes

        Raises:
            PipelineError: Classified failure (see module docstring)
        """
        self.validate_image(image, "image")
        if mask is not None:
            self.validate_image(mask, "mask")
        self.validate_prompt(prompt)
        data = await self._invoke(
            "generate",
            self._generate(image, mask, prompt),
            token,
            timeout or self._generate_timeout,
        )
        if not data:
            raise InvalidResponseError("AI service returned an empty image")
        return data

    async def _invoke[T](
        self,
        operation: str,
        call: Coroutine[Any, Any, T],
        token: CancellationToken,
        timeout: float,
    ) -> T:
        start_time = time.monotonic()
        try:
            result = await token.wait_for(call, timeout=timeout)
        except TimeoutError:
            observe_ai_request_duration(operation, "timeout", time.monotonic() - start_time)
            logger.warning(
                f"Remote {operation} call timed out after {timeout:.1f}s",
                extra={"operation": operation, "timeout_seconds": timeout},
            )
            raise RemoteTimeoutError(operation=operation, timeout_seconds=timeout) from None
        except PipelineError as e:
            observe_ai_request_duration(operation, e.kind.value, time.monotonic() - start_time)
            raise

        duration = time.monotonic() - start_time
        observe_ai_request_duration(operation, "success", duration)
        logger.debug(f"Remote {operation} call completed in {int(duration * 1000)}ms")
        return result

    @abstractmethod
    async def _analyze(self, image: bytes) -> str:
        """Perform one analysis request."""

    @abstractmethod
    async def _generate(self, image: bytes, mask: bytes | None, prompt: str) -> bytes:
        """Perform one generation request."""

    async def close(self) -> None:
        """Release transport resources. The base client holds none."""

    async def __aenter__(self) -> RemoteAIClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
