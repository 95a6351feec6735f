"""Unit tests for application wiring and logging setup."""

import asyncio
import logging
from unittest.mock import AsyncMock, Mock

import pytest
import structlog

from helpers import FakeCounter
from session_memory import SessionMemory
from session_memory.config.manager import ConfigManager
from session_memory.config.models import LoggingConfig
from session_memory.utils.errors import NoDeltaError
from session_memory.utils.logger import bind_operation_context, log_execution, setup_logging


@pytest.fixture(autouse=True)
def restore_logging():
    yield
    logging.basicConfig(level=logging.WARNING, handlers=[logging.NullHandler()], force=True)
    structlog.reset_defaults()


class TestSessionMemory:
    """Service wiring."""

    def test_start_wires_shared_services(self, temp_root):
        """Test that every service shares one store and storage root."""
        summarizer = Mock()
        summarizer.summarize = AsyncMock()
        memory = SessionMemory(
            summarizer=summarizer,
            config_path=temp_root / "missing.yaml",
            storage_root=temp_root / "storage",
            token_counter=FakeCounter(),
        )

        with memory:
            assert memory.started
            assert memory.paths.root == temp_root / "storage"
            assert memory.sessions.store is memory.store
            assert memory.versions.store is memory.store
            assert memory.orchestrator.locks is memory.locks
            assert memory.compositions.orchestrator is memory.orchestrator

        assert not memory.started

    def test_without_summarizer(self, temp_root):
        """Test that compression is disabled without a summarizer."""
        memory = SessionMemory(config_path=temp_root / "missing.yaml", storage_root=temp_root).start()

        assert memory.orchestrator is None
        assert memory.compositions.orchestrator is None
        memory.stop()

    def test_reload_updates_lock_staleness(self, temp_root):
        """Test settings applied on configuration reload."""
        path = temp_root / "session-memory.yaml"
        path.write_text("locks:\n  stale_after_seconds: 60\nlogging:\n  console: false\n", encoding="utf-8")
        memory = SessionMemory(config_path=path, storage_root=temp_root).start()
        assert memory.locks.stale_after_seconds == 60

        path.write_text("locks:\n  stale_after_seconds: 120\nlogging:\n  console: false\n", encoding="utf-8")
        memory.config_manager.reload()

        assert memory.locks.stale_after_seconds == 120
        memory.stop()

        path.write_text("locks:\n  stale_after_seconds: 30\nlogging:\n  console: false\n", encoding="utf-8")
        memory.config_manager.reload()
        assert memory.locks.stale_after_seconds == 120

    def test_config_path_after_earlier_load(self, temp_root):
        """Test that an explicit config file wins over one loaded earlier in the process."""
        ConfigManager(temp_root / "missing.yaml").config
        path = temp_root / "session-memory.yaml"
        path.write_text("locks:\n  stale_after_seconds: 45\nlogging:\n  console: false\n", encoding="utf-8")

        memory = SessionMemory(config_path=path, storage_root=temp_root).start()

        assert memory.config_manager.config_path == path
        assert memory.config.locks.stale_after_seconds == 45
        assert memory.locks.stale_after_seconds == 45
        memory.stop()


class TestLogging:
    """Logging setup and helpers."""

    def test_file_handler(self, temp_root):
        """Test that a configured log file receives records."""
        log_file = temp_root / "logs" / "session-memory.log"
        setup_logging(LoggingConfig(level="DEBUG", format="json", file=str(log_file), console=False))

        logging.getLogger("session_memory.test").info("hello")
        for handler in logging.getLogger().handlers:
            handler.flush()

        assert log_file.exists()
        assert "hello" in log_file.read_text(encoding="utf-8")

    def test_log_execution_keeps_results_and_errors(self):
        """Test that the decorator is transparent."""

        @log_execution
        def add(a, b):
            return a + b

        @log_execution
        async def refuse():
            raise NoDeltaError("s1")

        assert add(2, 3) == 5
        assert add.__name__ == "add"

        with pytest.raises(NoDeltaError):
            asyncio.run(refuse())

    def test_operation_context_is_scoped(self):
        """Test that bound ids are removed when the block ends."""
        with bind_operation_context(project_id="p", session_id="s"):
            assert structlog.contextvars.get_contextvars() == {"project_id": "p", "session_id": "s"}
        assert structlog.contextvars.get_contextvars() == {}
