"""Service fixtures wired to temporary storage."""

import pytest

from helpers import make_records, write_records
from session_memory.services.artifacts import ArtifactStore
from session_memory.services.composition import CompositionEngine
from session_memory.services.keepit_service import KeepitService
from session_memory.services.orchestrator import CompressionOrchestrator
from session_memory.services.sessions import SessionService
from session_memory.services.versions import VersionService


@pytest.fixture
def logs_dir(temp_root):
    path = temp_root / "logs"
    path.mkdir()
    return path


@pytest.fixture
def source(logs_dir):
    """Canonical log with six ten-word messages."""
    return write_records(logs_dir / "s1.jsonl", make_records(6))


@pytest.fixture
def sessions(store, counter):
    return SessionService(store=store, token_counter=counter)


@pytest.fixture
def artifacts(paths):
    return ArtifactStore(paths)


@pytest.fixture
def orchestrator(summarizer, store, locks, counter, artifacts):
    return CompressionOrchestrator(
        summarizer,
        store=store,
        locks=locks,
        token_counter=counter,
        artifacts=artifacts,
    )


@pytest.fixture
def versions(store, artifacts):
    return VersionService(store=store, artifacts=artifacts)


@pytest.fixture
def keepits(store):
    return KeepitService(store=store)


@pytest.fixture
def engine(store, artifacts):
    return CompositionEngine(store=store, artifacts=artifacts)


@pytest.fixture
def engine_with_compression(store, artifacts, orchestrator):
    return CompositionEngine(store=store, artifacts=artifacts, orchestrator=orchestrator)
