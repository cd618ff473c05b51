"""Embedding provider adapters for local OpenAI-style and Ollama servers."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

import httpx

from linkvault.core.errors import ConfigurationError
from linkvault.core.models import ProviderType

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30.0  # seconds
TEST_PROBE = "test connection"


@dataclass
class EmbeddingResult:
    embedding: list[float]
    dimensions: int


@dataclass
class ProviderTestResult:
    """Outcome of a connection test. Never raised, always returned."""

    success: bool
    dimensions: int | None = None
    error: str | None = None
    latency_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "dimensions": self.dimensions,
            "error": self.error,
            "latency_ms": self.latency_ms,
        }


class EmbeddingError(Exception):
    """Error during embedding generation."""

    def __init__(self, message: str, provider: str, retriable: bool = False):
        super().__init__(message)
        self.provider = provider
        self.retriable = retriable


class EmbeddingTimeoutError(EmbeddingError):
    def __init__(self, provider: str):
        super().__init__("Request timed out", provider=provider, retriable=True)


class EmbeddingTransportError(EmbeddingError):
    """The provider could not be reached (DNS, refused connection, reset)."""

    def __init__(self, message: str, provider: str):
        super().__init__(message, provider=provider, retriable=True)


class InvalidResponseError(EmbeddingError):
    def __init__(self, message: str = "Invalid response format from provider", *, provider: str):
        super().__init__(message, provider=provider, retriable=False)


class EmbeddingHTTPStatusError(InvalidResponseError):
    """The provider answered with a non-2xx status."""

    def __init__(self, status_code: int, reason: str, provider: str):
        super().__init__(f"HTTP {status_code}: {reason}", provider=provider)
        self.status_code = status_code
        self.retriable = status_code >= 500


class EmbeddingAdapter(Protocol):
    """What every provider kind must offer."""

    type: ProviderType

    async def generate_embedding(
        self,
        text: str,
        endpoint: str,
        model: str,
        prefix: str | None = None,
        suffix: str | None = None,
    ) -> EmbeddingResult: ...

    async def test_connection(
        self,
        endpoint: str,
        model: str,
        prefix: str | None = None,
        suffix: str | None = None,
    ) -> ProviderTestResult: ...

    async def close(self) -> None: ...

def _as_vector(value: Any, provider: str) -> list[float]:
    if not isinstance(value, list) or not value:
        raise InvalidResponseError(provider=provider)
    try:
        return [float(x) for x in value]
    except (TypeError, ValueError) as e:
        raise InvalidResponseError(provider=provider) from e


async def _check_connection(
    adapter: EmbeddingAdapter,
    endpoint: str,
    model: str,
    prefix: str | None,
    suffix: str | None,
) -> ProviderTestResult:
    start = time.monotonic()
    try:
        result = await adapter.generate_embedding(TEST_PROBE, endpoint, model, prefix, suffix)
    except EmbeddingError as e:
        logger.info(f"{adapter.type.value} connection test failed for {endpoint}: {e}")
        return ProviderTestResult(success=False, error=str(e))
    except Exception as e:
        logger.exception(f"Unexpected error testing {adapter.type.value} at {endpoint}")
        return ProviderTestResult(success=False, error=str(e) or type(e).__name__)

    latency_ms = int((time.monotonic() - start) * 1000)
    return ProviderTestResult(success=True, dimensions=result.dimensions, latency_ms=latency_ms)


class HTTPAdapter:
    """Base for adapters talking JSON over HTTP. Holds one lazily created client."""

    type: ProviderType

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(REQUEST_TIMEOUT),
                headers={"Content-Type": "application/json"},
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _post_json(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        """POST a JSON body and return the decoded JSON object.

        Raises:
            EmbeddingTimeoutError: The request exceeded REQUEST_TIMEOUT.
            EmbeddingTransportError: Any other network failure.
            EmbeddingHTTPStatusError: Non-2xx response.
            InvalidResponseError: Body is not a JSON object.
        """
        provider = self.type.value
        try:
            client = await self._get_client()
            response = await client.post(url, json=body)
        except httpx.TimeoutException as e:
            raise EmbeddingTimeoutError(provider) from e
        except httpx.TransportError as e:
            raise EmbeddingTransportError(str(e), provider=provider) from e

        if not response.is_success:
            raise EmbeddingHTTPStatusError(response.status_code, response.reason_phrase, provider)

        try:
            data = response.json()
        except ValueError as e:
            raise InvalidResponseError(provider=provider) from e
        if not isinstance(data, dict):
            raise InvalidResponseError(provider=provider)
        return data

    def _openai_vector(self, data: dict[str, Any]) -> list[float]:
        items = data.get("data")
        if not isinstance(items, list) or not items or not isinstance(items[0], dict):
            raise InvalidResponseError(provider=self.type.value)
        return _as_vector(items[0].get("embedding"), self.type.value)

    async def test_connection(
        self,
        endpoint: str,
        model: str,
        prefix: str | None = None,
        suffix: str | None = None,
    ) -> ProviderTestResult:
        return await _check_connection(self, endpoint, model, prefix, suffix)


class LocalAIAdapter(HTTPAdapter):
    """LocalAI server: OpenAI-compatible endpoint, honours document affixes."""

    type = ProviderType.LOCALAI

    async def generate_embedding(
        self,
        text: str,
        endpoint: str,
        model: str,
        prefix: str | None = None,
        suffix: str | None = None,
    ) -> EmbeddingResult:
        data = await self._post_json(
            f"{endpoint.rstrip('/')}/v1/embeddings",
            {"model": model, "input": f"{prefix or ''}{text}{suffix or ''}"},
        )
        embedding = self._openai_vector(data)
        return EmbeddingResult(embedding=embedding, dimensions=len(embedding))


class LlamaCppAdapter(HTTPAdapter):
    """llama.cpp server. Same wire format as LocalAI; affixes are not applied."""

    type = ProviderType.LLAMACPP

    async def generate_embedding(
        self,
        text: str,
        endpoint: str,
        model: str,
        prefix: str | None = None,
        suffix: str | None = None,
    ) -> EmbeddingResult:
        data = await self._post_json(
            f"{endpoint.rstrip('/')}/v1/embeddings",
            {"model": model, "input": text},
        )
        embedding = self._openai_vector(data)
        return EmbeddingResult(embedding=embedding, dimensions=len(embedding))


class OllamaAdapter(HTTPAdapter):
    """Ollama's native /api/embeddings endpoint (one prompt per call)."""

    type = ProviderType.OLLAMA

    async def generate_embedding(
        self,
        text: str,
        endpoint: str,
        model: str,
        prefix: str | None = None,
        suffix: str | None = None,
    ) -> EmbeddingResult:
        data = await self._post_json(
            f"{endpoint.rstrip('/')}/api/embeddings",
            {"model": model, "prompt": text},
        )
        embedding = _as_vector(data.get("embedding"), self.type.value)
        return EmbeddingResult(embedding=embedding, dimensions=len(embedding))


ADAPTERS: dict[ProviderType, EmbeddingAdapter] = {
    ProviderType.LOCALAI: LocalAIAdapter(),
    ProviderType.LLAMACPP: LlamaCppAdapter(),
    ProviderType.OLLAMA: OllamaAdapter(),
}


def get_adapter(
    provider_type: ProviderType | str,
    adapters: Mapping[ProviderType, EmbeddingAdapter] = ADAPTERS,
) -> EmbeddingAdapter:
    """Look up the adapter for a provider type.

    Raises:
        ConfigurationError: If the type is not supported.
    """
    try:
        return adapters[ProviderType(provider_type)]
    except (KeyError, ValueError) as e:
        raise ConfigurationError(
            f"Unsupported provider type: {provider_type!r}. Available: {[t.value for t in adapters]}"
        ) from e


def supported_types() -> list[ProviderType]:
    return list(ADAPTERS)
