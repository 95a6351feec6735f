"""Shared fixtures: temporary storage and fake collaborators."""

import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, Mock

import pytest

from helpers import FakeCounter, shorten
from session_memory.config.manager import ConfigManager
from session_memory.services.locks import SessionLockRegistry
from session_memory.services.manifest_store import ManifestStore
from session_memory.services.storage import StoragePaths


@pytest.fixture(autouse=True)
def default_config():
    """Every test starts from the default configuration."""
    ConfigManager.reset()
    yield
    ConfigManager.reset()


@pytest.fixture
def temp_root():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def paths(temp_root):
    return StoragePaths(root=temp_root / "storage")


@pytest.fixture
def store(paths):
    return ManifestStore(paths=paths, lock_timeout=5)


@pytest.fixture
def counter():
    return FakeCounter()


@pytest.fixture
def locks():
    return SessionLockRegistry(stale_after_seconds=300)


@pytest.fixture
def summarizer():
    mock = Mock()
    mock.summarize = AsyncMock(side_effect=shorten)
    return mock
