"""Service layer for session memory."""

from .composition import CompositionEngine, CompositionRequest
from .locks import OperationType, SessionLockRegistry, get_lock_registry
from .manifest_store import ManifestStore, get_manifest_store
from .messages import MessageLoader, Summarizer
from .orchestrator import CompressionOrchestrator
from .sessions import SessionService
from .keepit_service import KeepitService
from .storage import StoragePaths, get_storage_paths
from .versions import VersionService

__all__ = [
    "CompositionEngine",
    "CompositionRequest",
    "CompressionOrchestrator",
    "KeepitService",
    "ManifestStore",
    "MessageLoader",
    "OperationType",
    "SessionLockRegistry",
    "SessionService",
    "StoragePaths",
    "Summarizer",
    "VersionService",
    "get_lock_registry",
    "get_manifest_store",
    "get_storage_paths",
]
