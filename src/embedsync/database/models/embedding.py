"""Embedding model for embedsync.

Defines the Embedding table, one row per chunk of an embedded source field.
For a given (organization, source table, source id, source field) only the
chunks written by the latest completed job are active; older rows are kept
with ``is_active = false`` as a superseded history.
"""

from __future__ import annotations

from sqlalchemy import Boolean, Index, Integer, Text, text
from sqlalchemy.orm import Mapped, mapped_column
from pgvector.sqlalchemy import Vector

from embedsync.database.models.base import Base, TimestampMixin


class Embedding(TimestampMixin, Base):
    """One embedded chunk of a source record field.

    Attributes:
        id: UUID primary key (from TimestampMixin).
        organization_id: Owning organization.
        source_table: Content type of the source record.
        source_id: Identifier of the source record.
        source_field: Embedded field, or ``document`` for all fields.
        chunk_index: Position of the chunk within the field text.
        chunk_text: Text the vector was computed from.
        vector: Embedding vector (dimension depends on the model).
        dimensions: Length of ``vector``.
        content_hash: Hash of the full field text the chunks came from.
        embedding_model: Name of the model that produced the vector.
        is_active: Whether this row belongs to the current embedding.
    """

    __tablename__ = "embeddings"

    organization_id: Mapped[str] = mapped_column(Text, nullable=False)
    source_table: Mapped[str] = mapped_column(Text, nullable=False)
    source_id: Mapped[str] = mapped_column(Text, nullable=False)
    source_field: Mapped[str] = mapped_column(Text, nullable=False)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    chunk_text: Mapped[str] = mapped_column(Text, nullable=False)
    vector = mapped_column(Vector(), nullable=False)
    dimensions: Mapped[int] = mapped_column(Integer, nullable=False)
    content_hash: Mapped[str] = mapped_column(Text, nullable=False)
    embedding_model: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index(
            "uq_embeddings_active_chunk",
            "organization_id",
            "source_table",
            "source_id",
            "source_field",
            "chunk_index",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        Index(
            "ix_embeddings_source",
            "organization_id",
            "source_table",
            "source_id",
        ),
    )
