"""Queue setting query functions for embedsync."""

from __future__ import annotations

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from embedsync.database.models.base import utcnow
from embedsync.database.models.setting import QueueSetting

logger = structlog.get_logger(__name__)


async def get_settings_map(session: AsyncSession) -> dict[str, str]:
    """Return every stored setting as a key to raw value mapping."""
    result = await session.execute(select(QueueSetting.key, QueueSetting.value))
    return {key: value for key, value in result.all()}


async def upsert_setting(session: AsyncSession, key: str, value: str) -> None:
    """Insert or update one setting.

    Must run inside the caller's transaction.

    Args:
        session: Session inside an open transaction.
        key: Setting name.
        value: Raw text value.
    """
    stmt = (
        update(QueueSetting)
        .where(QueueSetting.key == key)
        .values(value=value, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount == 0:
        session.add(QueueSetting(key=key, value=value, updated_at=utcnow()))
        await session.flush()

    logger.info("queue_setting_updated", key=key, value=value)
