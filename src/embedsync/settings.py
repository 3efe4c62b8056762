"""Runtime queue tunables for embedsync.

QueueSettings holds the values operators adjust without a redeploy. They live
in the ``queue_settings`` table and are loaded once per drain (or bulk
enqueue) into an immutable struct that is passed down explicitly, so a drain
never observes a value changing mid-run.

Loading fails open: if the table cannot be read, or a single value is
invalid, the affected values fall back to their defaults and a warning is
logged. Configuration problems never fail a job.
"""

from __future__ import annotations

import structlog
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from embedsync.database.connection import STORE_ERRORS
from embedsync.database.queries.setting import get_settings_map, upsert_setting

logger = structlog.get_logger(__name__)


class QueueSettings(BaseModel):
    """Immutable runtime tunables.

    Attributes:
        max_concurrent_jobs: Jobs processed in parallel within one drain.
        job_timeout_ms: Per-job generator timeout; also the age after which
            a processing claim is considered abandoned.
        diff_rebuild_threshold_percent: Diff rate at or above which a bulk
            enqueue may rebuild every target instead of only changed ones.
    """

    model_config = {"frozen": True}

    max_concurrent_jobs: int = Field(default=3, ge=1, le=100)
    job_timeout_ms: int = Field(default=300_000, ge=1, le=3_600_000)
    diff_rebuild_threshold_percent: float = Field(default=30.0, ge=0.0, le=100.0)

    @property
    def job_timeout_seconds(self) -> float:
        """Per-job timeout in seconds."""
        return self.job_timeout_ms / 1000


SETTING_KEYS = tuple(QueueSettings.model_fields)


def parse_settings(raw: dict[str, str]) -> QueueSettings:
    """Build QueueSettings from raw stored values.

    Unknown keys are ignored. Each known key is validated on its own so one
    bad value only resets that field.

    Args:
        raw: Key to text value mapping as stored.

    Returns:
        QueueSettings with valid stored values applied over defaults.
    """
    values: dict[str, object] = {}
    for key in SETTING_KEYS:
        if key not in raw:
            continue
        try:
            values[key] = getattr(QueueSettings.model_validate({key: raw[key]}), key)
        except ValidationError:
            logger.warning(
                "queue_setting_invalid",
                key=key,
                value=raw[key],
                default=QueueSettings.model_fields[key].default,
            )
    return QueueSettings(**values)


class SettingsProvider:
    """Loads and updates QueueSettings from the database.

    Args:
        session_factory: Factory for database sessions.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def load(self) -> QueueSettings:
        """Read the current settings, falling back to defaults on error."""
        try:
            async with self._session_factory() as session:
                raw = await get_settings_map(session)
        except STORE_ERRORS as e:
            logger.warning("queue_settings_unavailable", error=str(e))
            return QueueSettings()

        return parse_settings(raw)

    async def update(self, **changes: object) -> QueueSettings:
        """Validate and persist one or more settings.

        Args:
            **changes: Setting name to new value.

        Returns:
            The settings as stored after the update.

        Raises:
            ValueError: If a key is unknown or a value is invalid.
        """
        unknown = set(changes) - set(SETTING_KEYS)
        if unknown:
            raise ValueError(f"Unknown queue settings: {sorted(unknown)}")

        try:
            validated = QueueSettings.model_validate(changes)
        except ValidationError as e:
            raise ValueError(str(e)) from e

        async with self._session_factory() as session:
            async with session.begin():
                for key in changes:
                    await upsert_setting(session, key, str(getattr(validated, key)))

        return await self.load()
