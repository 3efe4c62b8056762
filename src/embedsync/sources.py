"""Source content records and content-fetch adapters.

Each embeddable content type is a pydantic model tagged by ``source_table``.
``ContentRecord`` is the discriminated union of all of them, so a payload
for one type can never be mistaken for another.

Content is read through a ``ContentSource``. The drain worker re-fetches a
record at drain time so the embedding reflects the latest saved text, and
the enqueuer uses the same source to hash content it was not handed
explicitly.

Example:
    >>> source = StaticContentSource()
    >>> source.put(Post(id="p1", organization_id="org", title="Hello"))
    >>> record = await source.fetch("org", "posts", "p1")
    >>> record.text_for("document")
    'Hello'
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Annotated, ClassVar, Literal, Protocol, Union

import structlog
from pydantic import BaseModel, Field, TypeAdapter
from sqlalchemy import Column, MetaData, Table, Text, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from embedsync.errors import UNKNOWN_FIELD, PermanentJobError, UnsupportedContentType
from embedsync.hashing import compute_content_hash, join_fields

logger = structlog.get_logger(__name__)

DOCUMENT_FIELD = "document"


class BaseContent(BaseModel):
    """Fields shared by every content type.

    Subclasses declare ``source_table`` as a literal tag and list their
    embeddable fields, in concatenation order, in ``embeddable_fields``.
    """

    embeddable_fields: ClassVar[tuple[str, ...]] = ()

    id: str
    organization_id: str

    def text_for(self, field: str) -> str:
        """Return the embeddable text of one field, or of the whole record.

        Args:
            field: An embeddable field name or ``document``.

        Returns:
            The field text (empty string if unset).

        Raises:
            PermanentJobError: If the field is not embeddable for this type.
        """
        if field == DOCUMENT_FIELD:
            return join_fields(getattr(self, name) for name in self.embeddable_fields)
        if field not in self.embeddable_fields:
            raise PermanentJobError(
                f"{field!r} is not an embeddable field of {self.source_table}",
                UNKNOWN_FIELD,
            )
        return getattr(self, field) or ""

    def hash_for(self, field: str) -> str:
        """Return the content hash of ``text_for(field)``."""
        return compute_content_hash(self.text_for(field))


class Post(BaseContent):
    source_table: Literal["posts"] = "posts"
    embeddable_fields: ClassVar[tuple[str, ...]] = ("title", "summary", "content")

    title: str = ""
    summary: str | None = None
    content: str | None = None


class Service(BaseContent):
    source_table: Literal["services"] = "services"
    embeddable_fields: ClassVar[tuple[str, ...]] = ("title", "description")

    title: str = ""
    description: str | None = None


class Faq(BaseContent):
    source_table: Literal["faqs"] = "faqs"
    embeddable_fields: ClassVar[tuple[str, ...]] = ("question", "answer")

    question: str = ""
    answer: str | None = None


class CaseStudy(BaseContent):
    source_table: Literal["case_studies"] = "case_studies"
    embeddable_fields: ClassVar[tuple[str, ...]] = ("title", "summary", "content")

    title: str = ""
    summary: str | None = None
    content: str | None = None


class Product(BaseContent):
    source_table: Literal["products"] = "products"
    embeddable_fields: ClassVar[tuple[str, ...]] = ("title", "description")

    title: str = ""
    description: str | None = None


ContentRecord = Annotated[
    Union[Post, Service, Faq, CaseStudy, Product],
    Field(discriminator="source_table"),
]

CONTENT_TYPES: dict[str, type[BaseContent]] = {
    "posts": Post,
    "services": Service,
    "faqs": Faq,
    "case_studies": CaseStudy,
    "products": Product,
}

_record_adapter: TypeAdapter[ContentRecord] = TypeAdapter(ContentRecord)


def parse_record(data: dict) -> BaseContent:
    """Validate a raw payload into the content type named by its tag."""
    return _record_adapter.validate_python(data)


def fields_for(source_table: str) -> tuple[str, ...]:
    """Return the embeddable fields of a content type.

    Raises:
        UnsupportedContentType: If the type is unknown.
    """
    try:
        return CONTENT_TYPES[source_table].embeddable_fields
    except KeyError:
        raise UnsupportedContentType(source_table) from None


def is_valid_field(source_table: str, field: str) -> bool:
    """Return True if ``field`` can be embedded for ``source_table``."""
    return field == DOCUMENT_FIELD or field in fields_for(source_table)


class ContentSource(Protocol):
    """Read access to the current content of source records."""

    async def fetch(
        self,
        organization_id: str,
        source_table: str,
        source_id: str,
    ) -> BaseContent | None:
        """Return the current record, or None if it does not exist."""
        ...

    async def list_records(
        self,
        organization_id: str,
        source_table: str,
    ) -> Sequence[BaseContent]:
        """Return every record of one type for an organization."""
        ...


class StaticContentSource:
    """In-process content source backed by a dictionary.

    Used for tests, smoke runs, and callers that push content in with each
    request rather than exposing their tables.
    """

    def __init__(self, records: Sequence[BaseContent] = ()) -> None:
        self._records: dict[tuple[str, str, str], BaseContent] = {}
        for record in records:
            self.put(record)

    def put(self, record: BaseContent) -> None:
        """Insert or replace a record."""
        self._records[(record.organization_id, record.source_table, record.id)] = record

    def delete(self, organization_id: str, source_table: str, source_id: str) -> None:
        """Remove a record if present."""
        self._records.pop((organization_id, source_table, source_id), None)

    async def fetch(
        self,
        organization_id: str,
        source_table: str,
        source_id: str,
    ) -> BaseContent | None:
        if source_table not in CONTENT_TYPES:
            raise UnsupportedContentType(source_table)
        return self._records.get((organization_id, source_table, source_id))

    async def list_records(
        self,
        organization_id: str,
        source_table: str,
    ) -> list[BaseContent]:
        if source_table not in CONTENT_TYPES:
            raise UnsupportedContentType(source_table)
        return [
            record
            for (org, table, _), record in sorted(self._records.items())
            if org == organization_id and table == source_table
        ]


# Table definitions for the CRUD application's content tables. They live on
# their own MetaData so create_all/alembic for the queue never touches them.
content_metadata = MetaData()


def _content_table(name: str, fields: Sequence[str]) -> Table:
    return Table(
        name,
        content_metadata,
        Column("id", Text, primary_key=True),
        Column("organization_id", Text, nullable=False),
        *(Column(field, Text) for field in fields),
    )


CONTENT_TABLES: dict[str, Table] = {
    name: _content_table(name, model.embeddable_fields)
    for name, model in CONTENT_TYPES.items()
}


class SqlContentSource:
    """Content source reading the CRUD application's tables.

    One adapter per content type: the table's embeddable columns are
    selected and validated into the matching tagged model.

    Args:
        session_factory: Factory for sessions on the content database.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    def _table(self, source_table: str) -> Table:
        table = CONTENT_TABLES.get(source_table)
        if table is None:
            raise UnsupportedContentType(source_table)
        return table

    def _to_record(self, source_table: str, row: dict) -> BaseContent:
        data = {key: value for key, value in row.items() if value is not None}
        data["id"] = str(row["id"])
        data["organization_id"] = str(row["organization_id"])
        data["source_table"] = source_table
        return parse_record(data)

    async def fetch(
        self,
        organization_id: str,
        source_table: str,
        source_id: str,
    ) -> BaseContent | None:
        table = self._table(source_table)
        stmt = (
            select(table)
            .where(table.c.organization_id == organization_id)
            .where(table.c.id == source_id)
        )
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).mappings().first()

        if row is None:
            return None
        return self._to_record(source_table, dict(row))

    async def list_records(
        self,
        organization_id: str,
        source_table: str,
    ) -> list[BaseContent]:
        table = self._table(source_table)
        stmt = (
            select(table)
            .where(table.c.organization_id == organization_id)
            .order_by(table.c.id)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).mappings().all()

        records = [self._to_record(source_table, dict(row)) for row in rows]
        logger.debug(
            "content_records_listed",
            organization_id=organization_id,
            source_table=source_table,
            count=len(records),
        )
        return records
