"""Embedding store query functions for embedsync.

Provides async functions for reading active embedding hashes (the diff
baseline for the enqueuer), replacing the active embedding of a key, and
listing embeddings for dashboards.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from embedsync.database.models.base import utcnow
from embedsync.database.models.embedding import Embedding

logger = structlog.get_logger(__name__)


async def get_active_hash(
    session: AsyncSession,
    organization_id: str,
    source_table: str,
    source_id: str,
    source_field: str,
) -> str | None:
    """Return the content hash of the active embedding for a key.

    Args:
        session: Active async database session.
        organization_id: Owning organization.
        source_table: Content type.
        source_id: Source record identifier.
        source_field: Embedded field.

    Returns:
        The hash the active vectors were computed from, or None if the key
        has no active embedding.
    """
    stmt = (
        select(Embedding.content_hash)
        .where(Embedding.organization_id == organization_id)
        .where(Embedding.source_table == source_table)
        .where(Embedding.source_id == source_id)
        .where(Embedding.source_field == source_field)
        .where(Embedding.is_active.is_(True))
        .order_by(Embedding.chunk_index.asc())
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_active_hash_map(
    session: AsyncSession,
    organization_id: str,
    source_table: str,
) -> dict[tuple[str, str], str]:
    """Return active hashes of one content type keyed by (source_id, field)."""
    stmt = (
        select(Embedding.source_id, Embedding.source_field, Embedding.content_hash)
        .where(Embedding.organization_id == organization_id)
        .where(Embedding.source_table == source_table)
        .where(Embedding.is_active.is_(True))
        .distinct()
    )
    result = await session.execute(stmt)
    return {(source_id, field): content_hash for source_id, field, content_hash in result.all()}


async def replace_active_embedding(
    session: AsyncSession,
    organization_id: str,
    source_table: str,
    source_id: str,
    source_field: str,
    chunks: Sequence[tuple[str, Sequence[float]]],
    content_hash: str,
    embedding_model: str,
) -> int:
    """Supersede the active embedding of a key with new chunk vectors.

    Deactivates every active chunk for the key and inserts the new ones.
    Must run in the same transaction that completes the owning job.

    Args:
        session: Session inside an open transaction.
        organization_id: Owning organization.
        source_table: Content type.
        source_id: Source record identifier.
        source_field: Embedded field.
        chunks: (chunk_text, vector) pairs in document order.
        content_hash: Hash of the full text the chunks came from.
        embedding_model: Model that produced the vectors.

    Returns:
        Number of previously active rows that were superseded.
    """
    now = utcnow()
    deactivate = (
        update(Embedding)
        .where(Embedding.organization_id == organization_id)
        .where(Embedding.source_table == source_table)
        .where(Embedding.source_id == source_id)
        .where(Embedding.source_field == source_field)
        .where(Embedding.is_active.is_(True))
        .values(is_active=False, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(deactivate)
    superseded = result.rowcount

    for index, (text, vector) in enumerate(chunks):
        session.add(
            Embedding(
                organization_id=organization_id,
                source_table=source_table,
                source_id=source_id,
                source_field=source_field,
                chunk_index=index,
                chunk_text=text,
                vector=list(vector),
                dimensions=len(vector),
                content_hash=content_hash,
                embedding_model=embedding_model,
                is_active=True,
                created_at=now,
                updated_at=now,
            )
        )
    await session.flush()

    logger.debug(
        "embedding_replaced",
        organization_id=organization_id,
        source_table=source_table,
        source_id=source_id,
        source_field=source_field,
        chunk_count=len(chunks),
        superseded_count=superseded,
    )

    return superseded


async def list_embeddings(
    session: AsyncSession,
    organization_id: str | None = None,
    source_table: str | None = None,
    source_id: str | None = None,
    source_field: str | None = None,
    is_active: bool | None = True,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Embedding], int]:
    """List embedding rows with optional filters and pagination.

    Returns:
        Tuple of (rows ordered newest first, total matching count).
    """
    conditions = []
    if organization_id is not None:
        conditions.append(Embedding.organization_id == organization_id)
    if source_table is not None:
        conditions.append(Embedding.source_table == source_table)
    if source_id is not None:
        conditions.append(Embedding.source_id == source_id)
    if source_field is not None:
        conditions.append(Embedding.source_field == source_field)
    if is_active is not None:
        conditions.append(Embedding.is_active.is_(is_active))

    count_stmt = select(func.count()).select_from(Embedding).where(*conditions)
    total = (await session.execute(count_stmt)).scalar_one()

    stmt = (
        select(Embedding)
        .where(*conditions)
        .order_by(Embedding.created_at.desc(), Embedding.chunk_index.asc())
        .limit(limit)
        .offset(offset)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all()), total


async def get_embedding_stats(
    session: AsyncSession,
    organization_id: str | None = None,
) -> dict[str, Any]:
    """Count active embeddings.

    Returns:
        Dictionary with ``active_embeddings`` (distinct keys),
        ``active_chunks`` and ``embeddings_by_model`` (active chunks per model).
    """
    conditions = [Embedding.is_active.is_(True)]
    if organization_id is not None:
        conditions.append(Embedding.organization_id == organization_id)

    by_model_stmt = (
        select(Embedding.embedding_model, func.count())
        .where(*conditions)
        .group_by(Embedding.embedding_model)
    )
    by_model = {model: count for model, count in (await session.execute(by_model_stmt)).all()}

    # Chunk 0 exists exactly once per active key
    keys_stmt = (
        select(func.count())
        .select_from(Embedding)
        .where(*conditions)
        .where(Embedding.chunk_index == 0)
    )
    active_keys = (await session.execute(keys_stmt)).scalar_one()

    return {
        "active_embeddings": active_keys,
        "active_chunks": sum(by_model.values()),
        "embeddings_by_model": by_model,
    }
