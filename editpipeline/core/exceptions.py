"""Exception hierarchy for the AI edit pipeline.

Every error the pipeline can surface derives from ``PipelineError`` and carries:
1. An ``ErrorKind`` from the user-visible taxonomy
2. Whether the retry policy may retry it (``retryable``)
3. Whether the circuit breaker counts it against service health
   (``counts_as_failure``)
4. A stable ``error_code`` and structured ``details`` for logging
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any, ClassVar


class ErrorKind(StrEnum):
    """User-visible failure taxonomy."""

    VALIDATION = "validation"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    AUTH = "auth"
    TIMEOUT = "timeout"
    TRANSIENT_NETWORK = "transient_network"
    INVALID_RESPONSE = "invalid_response"
    SERVICE_UNAVAILABLE = "service_unavailable"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    default_message: str = "An unexpected error occurred"
    default_error_code: str = "INTERNAL_ERROR"
    kind: ClassVar[ErrorKind] = ErrorKind.INTERNAL
    retryable: ClassVar[bool] = False
    counts_as_failure: ClassVar[bool] = False

    def __init__(
        self,
        message: str | None = None,
        *,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
        attempts: int = 0,
    ) -> None:
        self.message = message or self.default_message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        self.attempts = attempts
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "code": self.error_code,
            "kind": self.kind.value,
            "message": self.message,
        }
        if self.attempts:
            result["attempts"] = self.attempts
        if self.details:
            result["details"] = self.details
        return result


# Client-side errors: fail fast, say nothing about service health
class ValidationError(PipelineError):
    default_message = "Validation failed"
    default_error_code = "VALIDATION_ERROR"
    kind = ErrorKind.VALIDATION


class PayloadTooLargeError(PipelineError):
    default_message = "Payload exceeds the maximum allowed size"
    default_error_code = "PAYLOAD_TOO_LARGE"
    kind = ErrorKind.PAYLOAD_TOO_LARGE

    def __init__(
        self,
        message: str | None = None,
        *,
        field: str | None = None,
        size: int | None = None,
        limit: int | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {}) or {}
        if field:
            details["field"] = field
        if size is not None:
            details["size_bytes"] = size
        if limit is not None:
            details["limit_bytes"] = limit
        if message is None and field and size is not None and limit is not None:
            message = f"{field} is {size} bytes, limit is {limit} bytes"
        super().__init__(message, details=details, **kwargs)


class AuthError(PipelineError):
    default_message = "Authentication with the AI service failed"
    default_error_code = "AUTH_ERROR"
    kind = ErrorKind.AUTH


# Service-health errors: retryable and counted by the circuit breaker
class RemoteTimeoutError(PipelineError):
    default_message = "AI service request timed out"
    default_error_code = "REMOTE_TIMEOUT"
    kind = ErrorKind.TIMEOUT
    retryable = True
    counts_as_failure = True

    def __init__(
        self,
        message: str | None = None,
        *,
        operation: str | None = None,
        timeout_seconds: float | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {}) or {}
        if operation:
            details["operation"] = operation
        if timeout_seconds is not None:
            details["timeout_seconds"] = timeout_seconds
        if message is None and operation and timeout_seconds is not None:
            message = f"{operation} timed out after {timeout_seconds:.1f}s"
        super().__init__(message, details=details, **kwargs)


class TransientNetworkError(PipelineError):
    default_message = "Transient network failure contacting the AI service"
    default_error_code = "TRANSIENT_NETWORK"
    kind = ErrorKind.TRANSIENT_NETWORK
    retryable = True
    counts_as_failure = True

    def __init__(
        self,
        message: str | None = None,
        *,
        status_code: int | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {}) or {}
        if status_code is not None:
            details["status_code"] = status_code
        self.status_code = status_code
        super().__init__(message, details=details, **kwargs)


class InvalidResponseError(PipelineError):
    default_message = "AI service returned an invalid or empty response"
    default_error_code = "INVALID_RESPONSE"
    kind = ErrorKind.INVALID_RESPONSE
    retryable = True
    counts_as_failure = True


# Pipeline control errors
class CircuitOpenError(PipelineError):
    default_message = "Service temporarily unavailable due to repeated failures"
    default_error_code = "CIRCUIT_OPEN"
    kind = ErrorKind.SERVICE_UNAVAILABLE

    def __init__(
        self,
        operation: str,
        message: str | None = None,
        *,
        retry_after: float | None = None,
        **kwargs: Any,
    ) -> None:
        if message is None:
            message = f"Circuit breaker for '{operation}' is open. Service is temporarily unavailable."
        details = kwargs.pop("details", {}) or {}
        details["operation"] = operation
        if retry_after is not None:
            details["retry_after_seconds"] = round(retry_after, 3)
        self.operation = operation
        self.retry_after = retry_after
        super().__init__(message, details=details, **kwargs)


class DeadlineExceededError(PipelineError):
    default_message = "Pipeline deadline exceeded"
    default_error_code = "DEADLINE_EXCEEDED"
    kind = ErrorKind.TIMEOUT


class PipelineCancelledError(PipelineError):
    default_message = "Pipeline request was cancelled"
    default_error_code = "CANCELLED"
    kind = ErrorKind.CANCELLED

    def __init__(self, message: str | None = None, *, reason: str | None = None, **kwargs: Any) -> None:
        if message is None and reason:
            message = f"Cancelled: {reason}"
        self.reason = reason
        super().__init__(message, **kwargs)


class ConfigurationError(PipelineError):
    default_message = "Configuration error"
    default_error_code = "CONFIGURATION_ERROR"
    kind = ErrorKind.INTERNAL
