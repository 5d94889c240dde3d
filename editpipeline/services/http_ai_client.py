"""HTTP client for the remote AI analysis/generation service.

Wire protocol (JSON over HTTPS, bearer authentication):

    POST {base_url}/v1/analyze
        {"image": <base64>, "instructions": <str>}
        -> {"text": <str>}

    POST {base_url}/v1/generate
        {"image": <base64>, "mask": <base64 | null>, "prompt": <str>}
        -> {"image": <base64>}

Error Handling:
    - Connection / transport errors: TransientNetworkError (retryable)
    - httpx timeouts: RemoteTimeoutError (retryable)
    - HTTP 5xx, 408, 429: TransientNetworkError (retryable)
    - HTTP 401/403: AuthError (fatal)
    - HTTP 413: PayloadTooLargeError (fatal)
    - Other HTTP 4xx: ValidationError (fatal)
    - Invalid JSON or missing fields: InvalidResponseError (retryable)

Raw httpx exceptions never escape this module.
"""

from __future__ import annotations

import base64
import binascii
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from editpipeline.core.config import Settings, get_settings
from editpipeline.core.exceptions import (
    AuthError,
    InvalidResponseError,
    PayloadTooLargeError,
    PipelineError,
    RemoteTimeoutError,
    TransientNetworkError,
    ValidationError,
)
from editpipeline.core.logging import get_logger, sanitize_error
from editpipeline.services.remote_ai_client import RemoteAIClient

if TYPE_CHECKING:
    from pydantic import SecretStr

logger = get_logger(__name__)

ANALYZE_PATH = "/v1/analyze"
GENERATE_PATH = "/v1/generate"

# Status codes that indicate a temporary condition on the service side
RETRYABLE_STATUS_CODES = frozenset({408, 429})


class CredentialProvider(Protocol):
    """Supplies the bearer credential for each request."""

    async def get_token(self) -> str: ...


class StaticCredentialProvider:
    """Credential provider backed by a fixed key (e.g. ``AI_API_KEY``)."""

    def __init__(self, token: str | SecretStr | None) -> None:
        if token is not None and not isinstance(token, str):
            token = token.get_secret_value()
        self._token = token or None

    async def get_token(self) -> str:
        if not self._token:
            raise AuthError("No credential configured for the AI service")
        return self._token


def _encode(data: bytes) -> str:
    return base64.b64encode(data).decode("utf-8")


class HttpRemoteAIClient(RemoteAIClient):
    """httpx-based ``RemoteAIClient``.

    Usage:
        async with HttpRemoteAIClient(settings=settings) as client:
            text = await client.analyze(image, token=token)
    """

    def __init__(
        self,
        base_url: str | None = None,
        credentials: CredentialProvider | None = None,
        *,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Service base URL. Defaults to the AI_BASE_URL setting.
            credentials: Credential provider. Defaults to AI_API_KEY.
            settings: Settings to read limits and timeouts from.
            http_client: Pre-built httpx client; the caller keeps ownership.
        """
        settings = settings or get_settings()
        super().__init__(
            max_payload_bytes=settings.max_payload_bytes,
            analyze_timeout=settings.analyze_timeout,
            generate_timeout=settings.generate_timeout,
        )
        self._base_url = (base_url or settings.ai_base_url).rstrip("/")
        self._credentials = credentials or StaticCredentialProvider(settings.ai_api_key)
        self._instructions = settings.analysis_instructions

        # Overall per-call limits are enforced by the base class; these keep a
        # stuck socket from outliving them.
        read_timeout = max(settings.analyze_timeout, settings.generate_timeout)
        self._timeout = httpx.Timeout(
            connect=settings.ai_connect_timeout,
            read=read_timeout,
            write=read_timeout,
            pool=settings.ai_connect_timeout,
        )
        self._client = http_client
        self._owns_client = http_client is None

        logger.info(f"HttpRemoteAIClient initialized with base_url={self._base_url}")

    @property
    def base_url(self) -> str:
        return self._base_url

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _analyze(self, image: bytes) -> str:
        payload = {"image": _encode(image), "instructions": self._instructions}
        data = await self._post("analyze", ANALYZE_PATH, payload)

        text = data.get("text")
        if not isinstance(text, str):
            raise InvalidResponseError("Malformed response from AI service: missing 'text'")
        return text

    async def _generate(self, image: bytes, mask: bytes | None, prompt: str) -> bytes:
        payload = {
            "image": _encode(image),
            "mask": _encode(mask) if mask is not None else None,
            "prompt": prompt,
        }
        data = await self._post("generate", GENERATE_PATH, payload)

        encoded = data.get("image")
        if not isinstance(encoded, str):
            raise InvalidResponseError("Malformed response from AI service: missing 'image'")
        try:
            return base64.b64decode(encoded, validate=True)
        except binascii.Error as e:
            raise InvalidResponseError(
                "Malformed response from AI service: 'image' is not valid base64"
            ) from e

    async def _post(self, operation: str, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        """POST a JSON payload and return the decoded JSON object.

        Raises:
            PipelineError: Classified failure; never a raw httpx exception
        """
        credential = await self._credentials.get_token()
        url = f"{self._base_url}{path}"

        try:
            response = await self._get_client().post(
                url,
                json=payload,
                headers={"Authorization": f"Bearer {credential}"},
            )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            logger.warning(f"AI service {operation} request timed out: {sanitize_error(e)}")
            raise RemoteTimeoutError(
                f"AI service {operation} request timed out",
                details={"operation": operation},
            ) from e
        except httpx.HTTPStatusError as e:
            raise self._classify_status(operation, e.response) from e
        except httpx.TransportError as e:
            logger.warning(f"Failed to reach AI service for {operation}: {sanitize_error(e)}")
            raise TransientNetworkError(
                f"Failed to reach AI service: {sanitize_error(e)}",
                details={"operation": operation},
            ) from e

        try:
            data = response.json()
        except ValueError as e:
            raise InvalidResponseError(
                f"AI service returned invalid JSON for {operation}"
            ) from e
        if not isinstance(data, dict):
            raise InvalidResponseError(f"AI service returned unexpected JSON for {operation}")
        return data

    def _classify_status(self, operation: str, response: httpx.Response) -> PipelineError:
        status_code = response.status_code
        details = {"operation": operation, "status_code": status_code}

        if status_code >= 500 or status_code in RETRYABLE_STATUS_CODES:
            logger.warning(f"AI service returned retryable status {status_code} for {operation}")
            return TransientNetworkError(
                f"AI service returned status {status_code}",
                status_code=status_code,
                details=details,
            )

        logger.error(f"AI service rejected {operation} request with status {status_code}")
        if status_code in (401, 403):
            return AuthError(f"AI service rejected credentials ({status_code})", details=details)
        if status_code == 413:
            return PayloadTooLargeError("AI service rejected payload as too large", details=details)
        return ValidationError(f"AI service rejected request ({status_code})", details=details)
