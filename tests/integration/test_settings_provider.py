"""Integration tests for the database-backed settings provider."""

from __future__ import annotations

import pytest

from embedsync.database.models import QueueSetting
from embedsync.database.queries.setting import get_settings_map, upsert_setting
from embedsync.settings import QueueSettings, SettingsProvider


@pytest.mark.asyncio
async def test_load_defaults_when_empty(settings_provider: SettingsProvider) -> None:
    assert await settings_provider.load() == QueueSettings()


@pytest.mark.asyncio
async def test_update_persists_values(settings_provider: SettingsProvider, session_factory) -> None:
    settings = await settings_provider.update(max_concurrent_jobs=7, job_timeout_ms=1500)

    assert settings.max_concurrent_jobs == 7
    assert settings.job_timeout_ms == 1500
    assert settings.diff_rebuild_threshold_percent == 30.0
    async with session_factory() as session:
        raw = await get_settings_map(session)
    assert raw == {"max_concurrent_jobs": "7", "job_timeout_ms": "1500"}


@pytest.mark.asyncio
async def test_update_overwrites_previous_value(settings_provider: SettingsProvider) -> None:
    await settings_provider.update(diff_rebuild_threshold_percent=10.0)
    settings = await settings_provider.update(diff_rebuild_threshold_percent=55.5)

    assert settings.diff_rebuild_threshold_percent == 55.5


@pytest.mark.asyncio
async def test_update_rejects_unknown_key(settings_provider: SettingsProvider) -> None:
    with pytest.raises(ValueError, match="Unknown queue settings"):
        await settings_provider.update(max_parallelism=4)


@pytest.mark.asyncio
async def test_update_rejects_out_of_range_value(settings_provider: SettingsProvider) -> None:
    with pytest.raises(ValueError):
        await settings_provider.update(max_concurrent_jobs=0)

    assert (await settings_provider.load()).max_concurrent_jobs == 3


@pytest.mark.asyncio
async def test_invalid_stored_value_falls_back(
    settings_provider: SettingsProvider, session_factory
) -> None:
    async with session_factory() as session:
        async with session.begin():
            await upsert_setting(session, "max_concurrent_jobs", "lots")
            await upsert_setting(session, "job_timeout_ms", "2000")

    settings = await settings_provider.load()

    assert settings.max_concurrent_jobs == 3
    assert settings.job_timeout_ms == 2000


@pytest.mark.asyncio
async def test_unreadable_table_falls_back(settings_provider: SettingsProvider, engine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(QueueSetting.__table__.drop)

    assert await settings_provider.load() == QueueSettings()
