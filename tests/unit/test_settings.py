"""Unit tests for runtime queue settings parsing."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from embedsync.settings import SETTING_KEYS, QueueSettings, parse_settings


def test_defaults() -> None:
    settings = QueueSettings()
    assert settings.max_concurrent_jobs == 3
    assert settings.job_timeout_ms == 300_000
    assert settings.job_timeout_seconds == 300.0
    assert settings.diff_rebuild_threshold_percent == 30.0


def test_setting_keys() -> None:
    assert set(SETTING_KEYS) == {
        "max_concurrent_jobs",
        "job_timeout_ms",
        "diff_rebuild_threshold_percent",
    }


def test_settings_are_immutable() -> None:
    settings = QueueSettings()
    with pytest.raises(ValidationError):
        settings.max_concurrent_jobs = 10


def test_parse_stored_values() -> None:
    settings = parse_settings(
        {
            "max_concurrent_jobs": "8",
            "job_timeout_ms": "1500",
            "diff_rebuild_threshold_percent": "12.5",
        }
    )
    assert settings.max_concurrent_jobs == 8
    assert settings.job_timeout_ms == 1500
    assert settings.diff_rebuild_threshold_percent == 12.5


def test_invalid_value_falls_back_to_default_for_that_key_only() -> None:
    settings = parse_settings(
        {
            "max_concurrent_jobs": "not-a-number",
            "job_timeout_ms": "0",
            "diff_rebuild_threshold_percent": "50",
        }
    )
    assert settings.max_concurrent_jobs == 3
    assert settings.job_timeout_ms == 300_000
    assert settings.diff_rebuild_threshold_percent == 50.0


def test_unknown_keys_ignored() -> None:
    assert parse_settings({"legacy_key": "1"}) == QueueSettings()
