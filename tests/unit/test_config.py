"""Unit tests for configuration loading."""

import tempfile
from pathlib import Path
from unittest.mock import Mock

import pytest

from session_memory.config import (
    ConfigLoadError,
    ConfigManager,
    build_config,
    env_overrides,
    get_config,
    load_config,
    load_config_from_string,
)
from session_memory.config.watcher import ConfigChangeHandler


class TestConfigLoader:
    """YAML loading and validation."""

    def test_empty_document_gives_defaults(self):
        """Test that an empty file is a valid, default configuration."""
        config = load_config_from_string("")

        assert config.decay.max_session_distance == 10
        assert config.decay.compression_base.light == 0.10
        assert config.decay.compression_base.moderate == 0.30
        assert config.decay.compression_base.aggressive == 0.50
        assert config.composition.overhead_tokens_per_component == 50
        assert config.locks.stale_after_seconds == 300

    def test_partial_override(self):
        """Test overriding a nested value."""
        config = load_config_from_string(
            """
decay:
  max_session_distance: 20
  compression_base:
    aggressive: 0.6
logging:
  level: DEBUG
"""
        )

        assert config.decay.max_session_distance == 20
        assert config.decay.compression_base.aggressive == 0.6
        assert config.decay.compression_base.light == 0.10
        assert config.logging.level == "DEBUG"

    def test_bases_must_ascend(self):
        """Test that a harsher level may not have a lower base."""
        with pytest.raises(ConfigLoadError) as exc_info:
            load_config_from_string(
                """
decay:
  compression_base:
    light: 0.4
    moderate: 0.3
"""
            )
        assert "compression_base" in str(exc_info.value)

    def test_out_of_range_value(self):
        """Test field constraints."""
        with pytest.raises(ConfigLoadError):
            load_config_from_string("decay:\n  max_session_distance: 0\n")

    def test_invalid_yaml(self):
        """Test unparseable YAML."""
        with pytest.raises(ConfigLoadError):
            load_config_from_string("decay: [unclosed")

    def test_non_mapping_document(self):
        """Test a YAML list at the top level."""
        with pytest.raises(ConfigLoadError):
            load_config_from_string("- a\n- b\n")

    def test_missing_file(self):
        """Test loading a file that does not exist."""
        with pytest.raises(ConfigLoadError):
            load_config(Path("/nonexistent/session-memory.yaml"))


class TestConfigManager:
    """Singleton behaviour."""

    def test_missing_file_uses_defaults(self):
        """Test that the config file is optional."""
        manager = ConfigManager(Path("/nonexistent/session-memory.yaml"))

        assert manager.config.storage.manifest_lock_timeout == 10.0

    def test_singleton(self):
        """Test that every construction returns the same instance."""
        assert ConfigManager() is ConfigManager()

    def test_reload_notifies_callbacks(self):
        """Test hot reload callbacks."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "session-memory.yaml"
            path.write_text("locks:\n  stale_after_seconds: 60\n", encoding="utf-8")
            manager = ConfigManager(path)
            assert get_config().locks.stale_after_seconds == 60

            seen = []
            manager.on_change(lambda config: seen.append(config.locks.stale_after_seconds))
            path.write_text("locks:\n  stale_after_seconds: 120\n", encoding="utf-8")
            manager.reload()

            assert seen == [120]
            assert get_config().locks.stale_after_seconds == 120


class TestConfigWatcher:
    """File change handling for hot reload."""

    def test_handler_filters_and_debounces(self):
        """Test that only the watched file triggers, at most once per debounce window."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "session-memory.yaml"
            path.write_text("", encoding="utf-8")
            callback = Mock()
            handler = ConfigChangeHandler(path, callback, debounce_seconds=60)

            handler.on_modified(Mock(is_directory=False, src_path=str(Path(tmpdir) / "other.yaml")))
            handler.on_modified(Mock(is_directory=True, src_path=str(path)))
            callback.assert_not_called()

            handler.on_modified(Mock(is_directory=False, src_path=str(path)))
            handler.on_created(Mock(is_directory=False, src_path=str(path)))
            callback.assert_called_once()

    def test_manager_starts_and_stops_watcher(self):
        """Test the watcher lifecycle owned by the manager."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "session-memory.yaml"
            path.write_text("", encoding="utf-8")
            manager = ConfigManager(path)

            manager.start_watcher()
            assert manager._watcher is not None
            assert manager._watcher.observer is not None

            manager.stop_watcher()
            assert manager._watcher is None


class TestEnvironmentOverrides:
    """``SESSION_MEMORY__SECTION__FIELD`` variables."""

    def test_nested_values_are_typed(self):
        """Test that overrides nest and keep scalar types."""
        overrides = env_overrides({
            "SESSION_MEMORY__DECAY__MAX_SESSION_DISTANCE": "20",
            "SESSION_MEMORY__LOGGING__CONSOLE": "false",
            "SESSION_MEMORY_CONFIG": "/etc/session-memory.yaml",
            "HOME": "/root",
        })

        assert overrides == {"decay": {"max_session_distance": 20}, "logging": {"console": False}}

    def test_overrides_win_over_document(self):
        """Test precedence over the YAML document."""
        config = load_config_from_string(
            "decay:\n  max_session_distance: 5\n",
            environ={"SESSION_MEMORY__DECAY__MAX_SESSION_DISTANCE": "7"},
        )

        assert config.decay.max_session_distance == 7

    def test_invalid_override_is_reported(self):
        """Test that overrides are validated like file values."""
        with pytest.raises(ConfigLoadError) as exc_info:
            build_config(None, "env", environ={"SESSION_MEMORY__LOCKS__STALE_AFTER_SECONDS": "soon"})
        assert "locks.stale_after_seconds" in str(exc_info.value)

    def test_value_and_section_conflict(self):
        """Test two variables that disagree about a key's shape."""
        with pytest.raises(ConfigLoadError):
            env_overrides({
                "SESSION_MEMORY__DECAY": "1",
                "SESSION_MEMORY__DECAY__MAX_SESSION_DISTANCE": "3",
            })
