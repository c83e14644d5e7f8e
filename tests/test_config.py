"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for tracker configs.
"""

import dataclasses
import os
import tempfile

import pytest
import yaml

from token_usage_tracker.config.loader import (
    CatalogConfig,
    TimeSyncConfig,
    TrackerConfig,
    default_config,
    load_tracker_config,
)
from token_usage_tracker.storage.usage_store import MergeStrategy


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config_data = {
            "timezone": "Europe/Berlin",
            "storage": {"db_path": "/tmp/usage.db"},
            "time_sync": {"enabled": False, "interval_seconds": 60},
            "catalog": {"provider": "openrouter", "refresh_hours": 12},
            "import": {"strategy": "replace"},
        }

        config = load_tracker_config(self._write_config(config_data))

        assert config.timezone == "Europe/Berlin"
        assert config.storage.db_path == "/tmp/usage.db"
        assert config.time_sync.enabled is False
        assert config.time_sync.interval_seconds == 60.0
        assert config.catalog.refresh_hours == 12.0
        assert config.catalog.enabled is True
        assert config.import_.strategy == MergeStrategy.REPLACE

    def test_empty_file_gives_defaults(self):
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        open(config_path, 'w').close()

        assert load_tracker_config(config_path) == default_config()

    def test_defaults(self):
        config = default_config()

        assert config.timezone == "America/New_York"
        assert config.time_sync.interval_seconds == 300
        assert config.catalog.provider == "openrouter"
        assert config.catalog.refresh_hours == 24
        assert config.import_.strategy == MergeStrategy.ADDITIVE
        assert config.time_sync_url == "https://worldtimeapi.org/api/timezone/America/New_York"

    def test_explicit_sync_url_wins(self):
        config = load_tracker_config(self._write_config({"time_sync": {"url": "http://clock.local/now"}}))

        assert config.time_sync_url == "http://clock.local/now"

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError):
            load_tracker_config(os.path.join(self.temp_dir, "nope.yaml"))

    def test_invalid_yaml(self):
        config_path = os.path.join(self.temp_dir, "bad.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("storage: [unclosed")

        with pytest.raises(yaml.YAMLError):
            load_tracker_config(config_path)

    def test_unknown_top_level_key(self):
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_tracker_config(self._write_config({"budget": {"daily": 1}}))

    def test_unknown_section_key(self):
        with pytest.raises(ValueError, match="Unknown keys in catalog"):
            load_tracker_config(self._write_config({"catalog": {"ttl": 5}}))

    def test_section_must_be_mapping(self):
        with pytest.raises(ValueError, match="'storage' must be a dictionary"):
            load_tracker_config(self._write_config({"storage": "usage.db"}))

    def test_unknown_timezone(self):
        with pytest.raises(ValueError, match="Unknown timezone"):
            load_tracker_config(self._write_config({"timezone": "Mars/Olympus_Mons"}))

    @pytest.mark.parametrize("value", [0, -5, "soon", True])
    def test_interval_must_be_positive_number(self, value):
        with pytest.raises(ValueError, match="interval_seconds"):
            load_tracker_config(self._write_config({"time_sync": {"interval_seconds": value}}))

    def test_wrong_type(self):
        with pytest.raises(ValueError, match="'enabled' in catalog must be a bool"):
            load_tracker_config(self._write_config({"catalog": {"enabled": "yes"}}))

    def test_invalid_strategy(self):
        with pytest.raises(ValueError, match="must be one of"):
            load_tracker_config(self._write_config({"import": {"strategy": "overwrite"}}))

    def test_non_mapping_document(self):
        with pytest.raises(ValueError, match="must be a mapping"):
            load_tracker_config(self._write_config(["a", "b"]))


class TestConfigDataclasses:
    """Test dataclass validation."""

    def test_time_sync_interval_validated(self):
        with pytest.raises(ValueError):
            TimeSyncConfig(interval_seconds=0)

    def test_catalog_refresh_validated(self):
        with pytest.raises(ValueError):
            CatalogConfig(refresh_hours=-1)

    def test_frozen(self):
        config = TrackerConfig()
        with pytest.raises(dataclasses.FrozenInstanceError):
            config.timezone = "UTC"
