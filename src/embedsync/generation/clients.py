"""HTTP clients for embedding providers.

Both clients speak to their provider over httpx, retry briefly on transient
transport failures and 5xx responses, and raise ``GeneratorError`` with a
``retryable`` flag so the drain worker can tell a provider outage (retry the
job later) from a request the provider will never accept (fail the job).

Example usage:
    >>> from embedsync.config import GeneratorConfig
    >>> async with OllamaEmbeddingClient(GeneratorConfig(provider="ollama")) as client:
    ...     vector = await client.generate_embedding("Hello world")
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import structlog

from embedsync.config import GeneratorConfig
from embedsync.errors import GeneratorError

logger = structlog.get_logger(__name__)

# Rate limiting is worth retrying; other 4xx responses are not
_RETRYABLE_STATUS = {408, 429}


def _is_retryable_status(status_code: int) -> bool:
    return status_code in _RETRYABLE_STATUS or 500 <= status_code < 600


def _error_detail(response: httpx.Response) -> str:
    try:
        return str(response.json())
    except ValueError:
        return response.text


class _HttpEmbeddingClient:
    """Shared request and retry handling for the provider clients."""

    provider = "http"
    health_endpoint = "/"

    def __init__(
        self,
        base_url: str,
        model: str,
        timeout_seconds: int = 30,
        headers: dict[str, str] | None = None,
        max_retries: int = 2,
        initial_backoff: float = 0.5,
    ) -> None:
        self.base_url = base_url
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self._headers = headers or {}
        self._client: httpx.AsyncClient | None = None

    @property
    def model_name(self) -> str:
        return self.model

    async def __aenter__(self) -> Any:
        """Async context manager entry."""
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.timeout_seconds),
            headers=self._headers,
        )
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError(
                f"{type(self).__name__} must be used as async context manager"
            )
        return self._client

    async def _post(self, endpoint: str, payload: dict[str, Any]) -> dict[str, Any]:
        """POST with exponential backoff on transient failures.

        Raises:
            GeneratorError: When retries are exhausted or the provider
                rejects the request.
        """
        client = self._get_client()

        for attempt in range(self.max_retries + 1):
            backoff = self.initial_backoff * (2**attempt)
            try:
                response = await client.post(endpoint, json=payload)
            except httpx.TimeoutException as e:
                if attempt < self.max_retries:
                    logger.warning(
                        "generator_timeout_retry",
                        provider=self.provider,
                        attempt=attempt + 1,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                raise GeneratorError(
                    f"{self.provider} request timed out after {attempt + 1} attempts",
                    retryable=True,
                    provider=self.provider,
                ) from e
            except httpx.TransportError as e:
                if attempt < self.max_retries:
                    logger.warning(
                        "generator_connection_error_retry",
                        provider=self.provider,
                        attempt=attempt + 1,
                        backoff_seconds=backoff,
                        error=str(e),
                    )
                    await asyncio.sleep(backoff)
                    continue
                raise GeneratorError(
                    f"Failed to connect to {self.provider} at {self.base_url}: {e}",
                    retryable=True,
                    provider=self.provider,
                ) from e

            if response.status_code == 200:
                try:
                    return response.json()
                except ValueError as e:
                    raise GeneratorError(
                        f"{self.provider} returned invalid JSON",
                        retryable=True,
                        provider=self.provider,
                    ) from e

            retryable = _is_retryable_status(response.status_code)
            if retryable and attempt < self.max_retries:
                logger.warning(
                    "generator_server_error_retry",
                    provider=self.provider,
                    status_code=response.status_code,
                    attempt=attempt + 1,
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
                continue

            logger.error(
                "generator_api_error",
                provider=self.provider,
                status_code=response.status_code,
                retryable=retryable,
            )
            raise GeneratorError(
                f"{self.provider} API error: HTTP {response.status_code}: "
                f"{_error_detail(response)}",
                retryable=retryable,
                provider=self.provider,
            )

        raise GeneratorError("Unexpected retry loop exit", provider=self.provider)

    async def health_check(self) -> bool:
        """Check if the provider answers on its health endpoint.

        Returns:
            True if the endpoint returned HTTP 200, False otherwise.
        """
        client = self._get_client()
        try:
            response = await client.get(self.health_endpoint)
        except httpx.TransportError as e:
            logger.warning(
                "generator_health_check_error",
                provider=self.provider,
                url=self.base_url,
                error=str(e),
            )
            return False

        if response.status_code != 200:
            logger.warning(
                "generator_health_check_failed",
                provider=self.provider,
                status_code=response.status_code,
            )
            return False
        return True


class OpenAIEmbeddingClient(_HttpEmbeddingClient):
    """Client for the OpenAI (or compatible) ``/embeddings`` endpoint."""

    provider = "openai"
    health_endpoint = "/models"

    def __init__(self, config: GeneratorConfig, **kwargs: Any) -> None:
        """Initialize OpenAI embedding client.

        Args:
            config: Generator configuration.
            **kwargs: Retry overrides (``max_retries``, ``initial_backoff``).

        Raises:
            ValueError: If no API key is configured.
        """
        api_key = config.resolved_api_key()
        if not api_key:
            raise ValueError(
                "OpenAI API key required: set generator.openai_api_key or OPENAI_API_KEY"
            )

        super().__init__(
            base_url=config.openai_base_url,
            model=config.model,
            timeout_seconds=config.timeout_seconds,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            **kwargs,
        )
        logger.info(
            "openai_embedding_client_initialized",
            model=config.model,
            timeout=config.timeout_seconds,
        )

    async def generate_embedding(self, text: str) -> list[float]:
        """Generate an embedding vector with the OpenAI API.

        Raises:
            GeneratorError: On request failure or malformed response.
        """
        data = await self._post("/embeddings", {"input": text, "model": self.model})
        try:
            embedding = data["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError) as e:
            raise GeneratorError(
                "Invalid response format: missing 'data[0].embedding'",
                retryable=False,
                provider=self.provider,
            ) from e

        logger.debug(
            "openai_embedding_generated",
            text_length=len(text),
            embedding_dim=len(embedding),
            model=self.model,
        )
        return embedding


class OllamaEmbeddingClient(_HttpEmbeddingClient):
    """Client for the Ollama ``/api/embeddings`` endpoint."""

    provider = "ollama"
    health_endpoint = "/api/tags"

    def __init__(self, config: GeneratorConfig, **kwargs: Any) -> None:
        super().__init__(
            base_url=config.ollama_url,
            model=config.ollama_model,
            timeout_seconds=config.timeout_seconds,
            **kwargs,
        )
        logger.info(
            "ollama_client_initialized",
            url=config.ollama_url,
            model=config.ollama_model,
            timeout=config.timeout_seconds,
        )

    async def generate_embedding(self, text: str) -> list[float]:
        """Generate an embedding vector with Ollama.

        Raises:
            GeneratorError: On request failure or malformed response.
        """
        data = await self._post("/api/embeddings", {"model": self.model, "prompt": text})
        embedding = data.get("embedding")
        if not embedding or not isinstance(embedding, list):
            raise GeneratorError(
                "Invalid response format: missing or invalid 'embedding' field",
                retryable=False,
                provider=self.provider,
            )

        logger.debug(
            "ollama_embedding_generated",
            text_length=len(text),
            embedding_dim=len(embedding),
        )
        return embedding

