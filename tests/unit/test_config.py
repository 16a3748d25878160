"""
Unit tests for configuration loading and validation.
"""

import os
import tempfile
from dataclasses import replace

import pytest

from dbaas.eavdb_server.config import (
    DriverConfig,
    LockConfig,
    ModelConfig,
    StorageConfig,
    UpdateConfig,
)


class TestDriverConfig:
    """Tests for DriverConfig."""

    def test_defaults(self):
        config = DriverConfig()
        assert config.model.column_count == 64
        assert config.model.value_base_length == 255
        assert config.storage.wal_mode is True
        assert config.update.serialize_updates is False
        config.validate()

    def test_from_env(self, monkeypatch):
        """EAVDB_* variables override the defaults."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "eav.sqlite3")
            monkeypatch.setenv("EAVDB_STORAGE_PATH", path)
            monkeypatch.setenv("EAVDB_COLUMN_COUNT", "16")
            monkeypatch.setenv("EAVDB_LOCK_TRY_MAX", "3")
            monkeypatch.setenv("EAVDB_SERIALIZE_UPDATES", "true")
            monkeypatch.setenv("EAVDB_USAGE_ENABLED", "false")

            config = DriverConfig.from_env()

        assert config.storage.path == path
        assert config.model.column_count == 16
        assert config.lock.try_max == 3
        assert config.update.serialize_updates is True
        assert config.usage.enabled is False

    def test_for_path(self):
        """for_path keeps other sections at their defaults unless given."""
        config = DriverConfig.for_path("/tmp/eav.sqlite3", model=ModelConfig(column_count=4))
        assert config.storage == StorageConfig(path="/tmp/eav.sqlite3")
        assert config.model.column_count == 4
        assert config.lock == LockConfig()
        assert config.update == UpdateConfig()

    def test_memory_database_rejected(self):
        """Every connection must see the same file."""
        with pytest.raises(ValueError, match=":memory:"):
            DriverConfig.for_path(":memory:")

    @pytest.mark.parametrize(
        "change",
        [
            {"model": ModelConfig(value_base_length=32)},
            {"model": ModelConfig(column_count=0)},
            {"lock": LockConfig(try_max=0)},
            {"storage": StorageConfig(path="/tmp/eav.sqlite3", max_retries=-1)},
        ],
    )
    def test_invalid(self, change):
        config = replace(DriverConfig.for_path("/tmp/eav.sqlite3"), **change)
        with pytest.raises(ValueError):
            config.validate()

    def test_log_config(self, caplog):
        caplog.set_level("INFO")
        DriverConfig().log_config()
        assert "Driver configuration loaded" in caplog.text
