"""Manifest repository.

The manifest is the only shared mutable state of a project. All writes go
through ``transaction`` (or ``update``), a read-modify-write against the
latest persisted document:

- writers in this process are serialized per project
- ``save`` re-reads the on-disk revision under a cross-process file lock
  and rejects the write with ``ManifestConflictError`` if it moved
- nothing is written when the transaction body raises

Reads never take the lock.
"""

import asyncio
import inspect
import json
import shutil
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

from pydantic import ValidationError as PydanticValidationError

from ..config.manager import get_config
from ..models.manifest import CompositionRecord, Manifest, ProjectSettings, SessionRecord
from ..models.message import utc_now_iso
from ..utils.errors import (
    ConflictError,
    ErrorCode,
    ManifestConflictError,
    ManifestCorruptionError,
    NotFoundError,
)
from ..utils.file_utils import AsyncFileLock, LockAcquireTimeout, async_read_file, async_write_json
from ..utils.logger import get_logger
from .migration import (
    MigrationBackups,
    migrate_document,
    needs_migration,
    validate_migrated_manifest,
)
from .storage import StoragePaths, display_name_for, get_storage_paths

logger = get_logger(__name__)

T = TypeVar("T")


class ManifestStore:
    """Load, validate, migrate and atomically persist project manifests."""

    def __init__(self, paths: StoragePaths | None = None, lock_timeout: float | None = None) -> None:
        """Initialize the store.

        Args:
            paths: Storage layout (defaults to the global one)
            lock_timeout: Seconds to wait for the manifest file lock
        """
        self.paths = paths or get_storage_paths()
        self.lock_timeout = lock_timeout if lock_timeout is not None else get_config().storage.manifest_lock_timeout
        self.backups = MigrationBackups(self.paths)
        self._project_locks: dict[str, asyncio.Lock] = {}

    def _project_lock(self, project_id: str) -> asyncio.Lock:
        lock = self._project_locks.get(project_id)
        if lock is None:
            lock = self._project_locks[project_id] = asyncio.Lock()
        return lock

    def _file_lock(self, project_id: str) -> AsyncFileLock:
        return AsyncFileLock(self.paths.manifest_path(project_id), timeout=self.lock_timeout)

    def create(self, project_id: str, original_path: str | None = None, display_name: str | None = None) -> Manifest:
        now = utc_now_iso()
        return Manifest(
            project_id=project_id,
            original_path=original_path,
            display_name=display_name or display_name_for(project_id),
            created_at=now,
            last_modified=now,
        )

    def exists(self, project_id: str) -> bool:
        return self.paths.manifest_path(project_id).exists()

    async def _read_document(self, project_id: str) -> dict[str, Any]:
        content = await async_read_file(self.paths.manifest_path(project_id))
        try:
            document = json.loads(content)
        except json.JSONDecodeError as e:
            raise ManifestCorruptionError(project_id, f"invalid JSON: {e}") from e
        if not isinstance(document, dict):
            raise ManifestCorruptionError(project_id, "document is not an object")
        return document

    async def _disk_revision(self, project_id: str) -> int:
        if not self.exists(project_id):
            return 0
        document = await self._read_document(project_id)
        return int(document.get("revision") or 0)

    def _validate(self, project_id: str, document: dict[str, Any]) -> Manifest:
        try:
            return Manifest.model_validate(document)
        except PydanticValidationError as e:
            first = e.errors()[0]
            where = ".".join(str(x) for x in first["loc"])
            raise ManifestCorruptionError(project_id, f"{where}: {first['msg']}") from e

    async def load(self, project_id: str, original_path: str | None = None) -> Manifest:
        """Load the manifest, creating and persisting a fresh one if none exists.

        Older schema versions are backed up, migrated and written back.

        Raises:
            ManifestCorruptionError: Unparseable or invalid document
        """
        self.paths.ensure_directory_structure(project_id)
        if self.exists(project_id):
            document = await self._read_document(project_id)
            if not needs_migration(document):
                return self._validate(project_id, document)
        async with self._project_lock(project_id):
            return await self._load_locked(project_id, original_path)

    async def _load_locked(self, project_id: str, original_path: str | None = None) -> Manifest:
        """``load`` for callers already holding the project lock."""
        self.paths.ensure_directory_structure(project_id)
        if not self.exists(project_id):
            manifest = await self.save(self.create(project_id, original_path=original_path))
            logger.info("Manifest created", extra={"project_id": project_id})
            return manifest

        document = await self._read_document(project_id)
        if needs_migration(document):
            document = await self._migrate(project_id, document)
        manifest = self._validate(project_id, document)
        logger.debug(
            "Manifest loaded",
            extra={"project_id": project_id, "revision": manifest.revision, "sessions": len(manifest.sessions)},
        )
        return manifest

    async def _migrate(self, project_id: str, document: dict[str, Any]) -> dict[str, Any]:
        await self.backups.create(project_id, document)
        migrated = migrate_document(document)
        report = validate_migrated_manifest(migrated)
        if not report["valid"]:
            raise ManifestCorruptionError(project_id, "; ".join(report["errors"]))
        for warning in report["warnings"]:
            logger.warning("Migrated manifest warning", extra={"project_id": project_id, "warning": warning})
        await self._write_locked(project_id, migrated)
        return migrated

    async def _write_locked(self, project_id: str, document: dict[str, Any]) -> None:
        try:
            with self._file_lock(project_id):
                await async_write_json(self.paths.manifest_path(project_id), document)
        except LockAcquireTimeout as e:
            raise self._lock_timeout(project_id) from e

    def _lock_timeout(self, project_id: str) -> ConflictError:
        return ConflictError(
            f"Manifest for project {project_id} is locked by another process",
            code=ErrorCode.LOCK_TIMEOUT,
            details={"project_id": project_id, "timeout_seconds": self.lock_timeout},
        )

    async def save(self, manifest: Manifest) -> Manifest:
        """Persist ``manifest`` if nobody saved since it was loaded.

        Returns:
            The manifest with bumped revision and lastModified

        Raises:
            ManifestConflictError: The on-disk revision moved
            ManifestCorruptionError: The document does not validate
        """
        project_id = manifest.project_id
        try:
            with self._file_lock(project_id):
                actual = await self._disk_revision(project_id)
                if actual != manifest.revision:
                    raise ManifestConflictError(project_id, manifest.revision, actual)
                document = manifest.to_document()
                document["revision"] = actual + 1
                document["lastModified"] = utc_now_iso()
                self._validate(project_id, document)
                await async_write_json(self.paths.manifest_path(project_id), document)
        except LockAcquireTimeout as e:
            raise self._lock_timeout(project_id) from e
        manifest.revision = document["revision"]
        manifest.last_modified = document["lastModified"]
        logger.debug("Manifest saved", extra={"project_id": project_id, "revision": manifest.revision})
        return manifest

    @asynccontextmanager
    async def transaction(self, project_id: str) -> AsyncIterator[Manifest]:
        """Read-modify-write block. The manifest is saved only if the body completes."""
        async with self._project_lock(project_id):
            manifest = await self._load_locked(project_id)
            yield manifest
            await self.save(manifest)

    async def update(self, project_id: str, fn: Callable[[Manifest], "T | Awaitable[T]"]) -> T:
        """Apply ``fn`` to the manifest inside a transaction and return its result."""
        async with self.transaction(project_id) as manifest:
            result = fn(manifest)
            if inspect.isawaitable(result):
                result = await result
        return result

    async def delete(self, project_id: str, delete_project_dir: bool = False) -> None:
        if not self.exists(project_id):
            raise NotFoundError(
                f"Manifest for project {project_id} not found",
                code=ErrorCode.PROJECT_NOT_FOUND,
                details={"project_id": project_id},
            )
        async with self._project_lock(project_id):
            if delete_project_dir:
                shutil.rmtree(self.paths.project_dir(project_id))
            else:
                self.paths.manifest_path(project_id).unlink()
        logger.info("Manifest deleted", extra={"project_id": project_id, "project_dir_removed": delete_project_dir})

    async def restore_backup(self, project_id: str, backup_file: str) -> Manifest:
        """Replace the manifest with a backup; the next load migrates it again."""
        async def write(document: dict[str, Any]) -> None:
            async with self._project_lock(project_id):
                await self._write_locked(project_id, document)

        await self.backups.restore(project_id, backup_file, writer=write)
        return await self.load(project_id)

    async def cleanup_backups(self, project_id: str, keep: int | None = None) -> dict[str, int]:
        if keep is None:
            keep = get_config().storage.migration_backups_kept
        return await self.backups.cleanup(project_id, keep)

    # Session helpers

    async def get_session(self, project_id: str, session_id: str) -> SessionRecord | None:
        manifest = await self.load(project_id)
        return manifest.sessions.get(session_id)

    async def set_session(self, project_id: str, session: SessionRecord) -> None:
        async with self.transaction(project_id) as manifest:
            manifest.sessions[session.session_id] = session

    async def remove_session(self, project_id: str, session_id: str) -> bool:
        async with self.transaction(project_id) as manifest:
            return manifest.sessions.pop(session_id, None) is not None

    async def list_sessions(self, project_id: str) -> list[SessionRecord]:
        manifest = await self.load(project_id)
        return list(manifest.sessions.values())

    async def touch_session(self, project_id: str, session_id: str) -> None:
        async with self.transaction(project_id) as manifest:
            session = manifest.sessions.get(session_id)
            if session is not None:
                session.last_accessed = utc_now_iso()

    async def get_settings(self, project_id: str) -> ProjectSettings:
        manifest = await self.load(project_id)
        return manifest.settings

    async def update_settings(self, project_id: str, changes: dict[str, Any]) -> ProjectSettings:
        async with self.transaction(project_id) as manifest:
            merged = {**manifest.settings.model_dump(), **changes}
            manifest.settings = ProjectSettings.model_validate(merged)
            return manifest.settings

    async def get_composition(self, project_id: str, composition_id: str) -> CompositionRecord | None:
        manifest = await self.load(project_id)
        return manifest.compositions.get(composition_id)

    async def list_compositions(self, project_id: str) -> list[CompositionRecord]:
        manifest = await self.load(project_id)
        return list(manifest.compositions.values())


# Global instance
_manifest_store: ManifestStore | None = None


def get_manifest_store() -> ManifestStore:
    """Get or create the global manifest store."""
    global _manifest_store
    if _manifest_store is None:
        _manifest_store = ManifestStore()
    return _manifest_store
