"""Content hashing and chunking for embedding diff detection.

The content hash is the fingerprint the enqueuer compares against the hash
stored on the active embedding to decide whether a save actually changed
anything worth re-embedding. It must be stable across processes and
releases, so normalisation is deliberately minimal: Unicode NFC, newline
unification, and trimming of outer whitespace.
"""

from __future__ import annotations

import hashlib
import unicodedata
from collections.abc import Iterable

FIELD_SEPARATOR = "\n\n"
HASH_LENGTH = 64


def normalize_text(text: str) -> str:
    """Normalise text before hashing or embedding."""
    normalized = unicodedata.normalize("NFC", text)
    normalized = normalized.replace("\r\n", "\n").replace("\r", "\n")
    return normalized.strip()


def compute_content_hash(text: str) -> str:
    """Compute the SHA-256 hex digest of normalised text.

    Args:
        text: Embeddable text of a single source field.

    Returns:
        64-character lowercase hex digest.
    """
    return hashlib.sha256(normalize_text(text).encode("utf-8")).hexdigest()


def join_fields(parts: Iterable[str | None]) -> str:
    """Concatenate the non-empty embeddable fields of a record."""
    return FIELD_SEPARATOR.join(
        normalize_text(part) for part in parts if part and part.strip()
    )


def hash_fields(parts: Iterable[str | None]) -> str:
    """Hash the concatenation of a record's embeddable fields."""
    return compute_content_hash(join_fields(parts))


def chunk_text(text: str, max_chunk_size: int = 1000, overlap: int = 100) -> list[str]:
    """Split text into overlapping windows for embedding.

    Text that fits in one window is returned as a single chunk. Each
    following window starts ``overlap`` characters before the end of the
    previous one so sentences cut at a boundary appear whole in one chunk.

    Args:
        text: Text to split.
        max_chunk_size: Maximum characters per chunk.
        overlap: Characters shared by consecutive chunks.

    Returns:
        List of chunks in document order.

    Raises:
        ValueError: If overlap is not smaller than max_chunk_size.
    """
    if max_chunk_size <= 0:
        raise ValueError("max_chunk_size must be positive")
    if overlap < 0 or overlap >= max_chunk_size:
        raise ValueError("overlap must be in [0, max_chunk_size)")

    if len(text) <= max_chunk_size:
        return [text]

    chunks: list[str] = []
    start = 0
    while start < len(text):
        end = min(start + max_chunk_size, len(text))
        chunks.append(text[start:end])
        if end >= len(text):
            break
        start = end - overlap

    return chunks
