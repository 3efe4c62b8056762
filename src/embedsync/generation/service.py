"""Embedding generation service with provider fallback.

The drain worker depends only on the ``EmbeddingGenerator`` protocol: an
async ``generate(text) -> vector`` plus the ``model_name`` recorded on each
stored embedding. ``EmbeddingService`` implements it on top of one or two
provider clients, normalizing every vector to unit length so cosine
similarity is consistent across providers.

Example usage:
    >>> from embedsync.config import GeneratorConfig
    >>> async with open_embedding_service(GeneratorConfig()) as service:
    ...     vector = await service.generate("Hello world")
"""

from __future__ import annotations

import contextvars
import time
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Protocol

import numpy as np
import structlog

from embedsync.config import GeneratorConfig
from embedsync.errors import EMPTY_CONTENT, GeneratorError, PermanentJobError
from embedsync.generation.clients import OllamaEmbeddingClient, OpenAIEmbeddingClient

logger = structlog.get_logger(__name__)

_last_model: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "embedding_last_model", default=None
)


class EmbeddingClient(Protocol):
    """Protocol for provider client implementations."""

    provider: str

    @property
    def model_name(self) -> str:
        ...

    async def generate_embedding(self, text: str) -> list[float]:
        """Generate embedding vector for text."""
        ...

    async def health_check(self) -> bool:
        """Check if client is healthy."""
        ...


class EmbeddingGenerator(Protocol):
    """Opaque ``text -> vector`` function consumed by the drain worker."""

    @property
    def model_name(self) -> str:
        ...

    async def generate(self, text: str) -> list[float]:
        """Return the embedding vector of ``text``."""
        ...


class EmbeddingService:
    """High-level embedding generation with optional provider fallback.

    Attributes:
        primary: Client used for every request.
        fallback: Client tried when the primary raises a retryable error.
    """

    def __init__(
        self,
        primary: EmbeddingClient,
        fallback: EmbeddingClient | None = None,
    ) -> None:
        self.primary = primary
        self.fallback = fallback

        logger.info(
            "embedding_service_initialized",
            provider=primary.provider,
            has_fallback=fallback is not None,
        )

    @property
    def model_name(self) -> str:
        """Model of the client that produced the latest vector in this task.

        Falls back to the primary model before any call has been made.
        """
        return _last_model.get() or self.primary.model_name

    @staticmethod
    def _normalize_embedding(embedding: list[float]) -> list[float]:
        """Normalize embedding to unit vector.

        Args:
            embedding: Raw embedding vector

        Returns:
            Normalized embedding vector (L2 norm = 1.0)
        """
        arr = np.array(embedding, dtype=np.float32)
        norm = np.linalg.norm(arr)

        if norm == 0:
            logger.warning("embedding_zero_norm", embedding_dim=len(embedding))
            return list(embedding)

        return (arr / norm).tolist()

    async def _generate_with(self, client: EmbeddingClient, text: str) -> list[float]:
        start_time = time.monotonic()
        raw_embedding = await client.generate_embedding(text)
        normalized = self._normalize_embedding(raw_embedding)
        _last_model.set(client.model_name)

        logger.debug(
            "embedding_generated",
            provider=client.provider,
            text_length=len(text),
            embedding_dim=len(normalized),
            duration_seconds=round(time.monotonic() - start_time, 3),
        )
        return normalized

    async def generate(self, text: str) -> list[float]:
        """Generate a normalized embedding for text.

        Args:
            text: Input text to embed

        Returns:
            Normalized embedding vector

        Raises:
            PermanentJobError: If text is empty or only whitespace
            GeneratorError: If every configured provider fails
        """
        if not text or not text.strip():
            raise PermanentJobError(
                "Cannot generate embedding for empty or whitespace text",
                EMPTY_CONTENT,
            )

        try:
            return await self._generate_with(self.primary, text)
        except GeneratorError as e:
            if self.fallback is None or not e.retryable:
                raise

            logger.warning(
                "embedding_fallback",
                primary=self.primary.provider,
                fallback=self.fallback.provider,
                error=str(e),
            )
            return await self._generate_with(self.fallback, text)

    async def health_check(self) -> bool:
        """Return True if the primary provider is reachable."""
        return await self.primary.health_check()


def _build_client(provider: str, config: GeneratorConfig) -> EmbeddingClient:
    if provider == "ollama":
        return OllamaEmbeddingClient(config)
    return OpenAIEmbeddingClient(config)


@asynccontextmanager
async def open_embedding_service(config: GeneratorConfig) -> AsyncIterator[EmbeddingService]:
    """Open the configured provider clients and yield a service over them.

    The fallback client is the other provider and is only created when
    ``fallback_enabled`` is set and it can be configured.

    Args:
        config: Generator configuration.

    Yields:
        EmbeddingService whose clients are open for the duration.
    """
    async with AsyncExitStack() as stack:
        primary = await stack.enter_async_context(_build_client(config.provider, config))

        fallback = None
        if config.fallback_enabled:
            other = "ollama" if config.provider == "openai" else "openai"
            try:
                fallback = await stack.enter_async_context(_build_client(other, config))
            except ValueError as e:
                logger.warning("embedding_fallback_unavailable", provider=other, error=str(e))

        yield EmbeddingService(primary=primary, fallback=fallback)
