"""Embedding generation for embedsync.

Provider clients (OpenAI, Ollama) and the EmbeddingService the drain worker
calls through the EmbeddingGenerator protocol.
"""

from embedsync.generation.clients import OllamaEmbeddingClient, OpenAIEmbeddingClient
from embedsync.generation.service import (
    EmbeddingClient,
    EmbeddingGenerator,
    EmbeddingService,
    open_embedding_service,
)

__all__ = [
    "EmbeddingClient",
    "EmbeddingGenerator",
    "EmbeddingService",
    "OllamaEmbeddingClient",
    "OpenAIEmbeddingClient",
    "open_embedding_service",
]
