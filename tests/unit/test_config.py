"""Unit tests for configuration management.

Tests cover:
- Default configuration values
- TOML file loading
- Environment variable overrides
- Validation errors for invalid configurations
"""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from embedsync.config import (
    DatabaseConfig,
    EmbedsyncConfig,
    GeneratorConfig,
    LoggingConfig,
    QueueConfig,
    load_config,
)


class TestDatabaseConfig:
    """Test DatabaseConfig defaults and validation."""

    def test_default_values(self) -> None:
        config = DatabaseConfig()
        assert config.url.startswith("postgresql+asyncpg://")
        assert config.pool_size == 5
        assert config.max_overflow == 10
        assert config.echo is False

    def test_pool_size_validation(self) -> None:
        with pytest.raises(ValidationError):
            DatabaseConfig(pool_size=0)
        with pytest.raises(ValidationError):
            DatabaseConfig(pool_size=101)


class TestGeneratorConfig:
    """Test GeneratorConfig provider handling."""

    def test_provider_is_lowercased(self) -> None:
        assert GeneratorConfig(provider="Ollama").provider == "ollama"

    def test_unknown_provider_rejected(self) -> None:
        with pytest.raises(ValidationError):
            GeneratorConfig(provider="cohere")

    def test_api_key_falls_back_to_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        assert GeneratorConfig().resolved_api_key() == "sk-env"
        assert GeneratorConfig(openai_api_key="sk-explicit").resolved_api_key() == "sk-explicit"


class TestQueueConfig:
    """Test QueueConfig defaults and cross-field validation."""

    def test_default_values(self) -> None:
        config = QueueConfig()
        assert config.batch_size == 10
        assert config.max_attempts == 3
        assert config.default_priority == 5
        assert config.worker_id

    def test_priority_bounds(self) -> None:
        with pytest.raises(ValidationError):
            QueueConfig(default_priority=0)
        with pytest.raises(ValidationError):
            QueueConfig(default_priority=11)

    def test_overlap_must_be_smaller_than_chunk(self) -> None:
        with pytest.raises(ValidationError, match="chunk_overlap"):
            QueueConfig(chunk_size=100, chunk_overlap=100)


class TestLoggingConfig:
    def test_level_normalized(self) -> None:
        assert LoggingConfig(level="debug").level == "DEBUG"

    def test_invalid_format_rejected(self) -> None:
        with pytest.raises(ValidationError):
            LoggingConfig(format="xml")


class TestLoadConfig:
    """Test configuration loading from files and environment."""

    def test_load_from_toml(self, tmp_path: Path) -> None:
        config_file = tmp_path / "embedsync.toml"
        config_file.write_text(
            """
[database]
url = "postgresql+asyncpg://toml/db"

[queue]
batch_size = 25
max_attempts = 5

[generator]
provider = "ollama"
"""
        )

        config = load_config(config_file)

        assert config.database.url == "postgresql+asyncpg://toml/db"
        assert config.queue.batch_size == 25
        assert config.queue.max_attempts == 5
        assert config.generator.provider == "ollama"

    def test_missing_explicit_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "missing.toml")

    def test_invalid_toml_values(self, tmp_path: Path) -> None:
        config_file = tmp_path / "embedsync.toml"
        config_file.write_text("[queue]\nbatch_size = 0\n")

        with pytest.raises(ValueError, match="Invalid configuration"):
            load_config(config_file)

    def test_environment_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("EMBEDSYNC_QUEUE__BATCH_SIZE", "42")
        monkeypatch.setenv("EMBEDSYNC_DATABASE__URL", "sqlite+aiosqlite:///env.db")

        config = EmbedsyncConfig()

        assert config.queue.batch_size == 42
        assert config.database.url == "sqlite+aiosqlite:///env.db"
