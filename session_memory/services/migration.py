"""Manifest schema migrations.

Migrations operate on the raw JSON document (camelCase keys) before it is
validated into a ``Manifest``. Each registered version upgrades a document
from the previous version; ``migrate_document`` applies every step newer than the
document's version in semver order and appends to ``migrationHistory``.
"""

import copy
import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import cmp_to_key
from pathlib import Path
from typing import Any, Awaitable, Callable

import aiofiles.os

from ..models.manifest import CURRENT_SCHEMA_VERSION
from ..models.message import utc_now_iso
from ..utils.errors import ErrorCode, NotFoundError, SessionMemoryError, ValidationError
from ..utils.file_utils import async_read_file, async_write_json
from ..utils.logger import get_logger
from .storage import StoragePaths, get_storage_paths

logger = get_logger(__name__)

BASE_SCHEMA_VERSION = "1.0.0"

MigrationFn = Callable[[dict[str, Any]], dict[str, Any]]

_SEMVER = re.compile(r"^\d+\.\d+\.\d+$")
_BACKUP_NAME = re.compile(r"^manifest-(\d+\.\d+\.\d+)-(.+)\.json$")


def semver_compare(a: str, b: str) -> int:
    """-1, 0 or 1; missing components count as 0."""
    parts_a = [int(x) for x in a.split(".")]
    parts_b = [int(x) for x in b.split(".")]
    for i in range(3):
        x = parts_a[i] if i < len(parts_a) else 0
        y = parts_b[i] if i < len(parts_b) else 0
        if x != y:
            return -1 if x < y else 1
    return 0


@dataclass(frozen=True)
class Migration:
    version: str
    description: str
    migrate: MigrationFn


def _level_from_settings(settings: dict[str, Any] | None) -> str:
    settings = settings or {}
    if settings.get("mode") == "uniform":
        return {"minimal": "light", "aggressive": "aggressive"}.get(settings.get("aggressiveness"), "moderate")
    if settings.get("customTiers"):
        return "moderate"
    return {"gentle": "light", "aggressive": "aggressive"}.get(settings.get("tierPreset"), "moderate")


def _add_part_tracking(manifest: dict[str, Any]) -> dict[str, Any]:
    """Legacy whole-session compressions become part 1 with a synthesized range."""
    manifest.setdefault("revision", 0)
    for session in (manifest.get("sessions") or {}).values():
        message_count = session.get("originalMessages") or 0
        for record in session.get("compressions") or []:
            if record.get("partNumber") is not None:
                continue
            record["partNumber"] = 1
            record["isFullSession"] = True
            record.setdefault("compressionLevel", _level_from_settings(record.get("settings")))
            record.setdefault("messageRange", {
                "startIndex": 0,
                "endIndex": message_count,
                "messageCount": message_count,
                "startTimestamp": session.get("firstTimestamp"),
                "endTimestamp": session.get("lastTimestamp"),
            })
    return manifest


_MIGRATIONS: dict[str, Migration] = {
    "1.0.0": Migration("1.0.0", "Base version - no migration needed", lambda m: m),
    "1.1.0": Migration(
        "1.1.0",
        "Add part tracking to compressions and a manifest revision counter",
        _add_part_tracking,
    ),
}


def sorted_versions() -> list[str]:
    return sorted(_MIGRATIONS, key=cmp_to_key(semver_compare))


def needs_migration(document: dict[str, Any]) -> bool:
    return semver_compare(document.get("version") or BASE_SCHEMA_VERSION, CURRENT_SCHEMA_VERSION) < 0


def list_migrations() -> list[dict[str, str]]:
    return [{"version": v, "description": _MIGRATIONS[v].description} for v in sorted_versions()]


def register_migration(version: str, description: str, migrate: MigrationFn) -> None:
    """Add or replace a migration step."""
    if not version or not _SEMVER.match(version):
        raise ValidationError("Migration version must be a semver string", field="version", value=version)
    if not callable(migrate):
        raise ValidationError("Migration must be callable", field="migrate")
    _MIGRATIONS[version] = Migration(version, description, migrate)


def migrate_document(document: dict[str, Any], target: str = CURRENT_SCHEMA_VERSION) -> dict[str, Any]:
    """Apply every pending step up to ``target``. The input is not mutated.

    Raises:
        SessionMemoryError: MANIFEST_CORRUPTION when a step fails
    """
    start = document.get("version") or BASE_SCHEMA_VERSION
    if semver_compare(start, target) >= 0:
        return document

    migrated = copy.deepcopy(document)

    for version in sorted_versions():
        if semver_compare(version, start) <= 0 or semver_compare(version, target) > 0:
            continue
        step = _MIGRATIONS[version]
        previous = migrated.get("version") or BASE_SCHEMA_VERSION
        try:
            migrated = step.migrate(migrated)
        except (KeyError, TypeError, ValueError) as e:
            raise SessionMemoryError(
                f"Migration to version {version} failed: {e}",
                code=ErrorCode.MANIFEST_CORRUPTION,
                details={"from": previous, "to": version},
            ) from e
        migrated["version"] = version
        migrated.setdefault("migrationHistory", []).append({
            "from": previous,
            "to": version,
            "timestamp": utc_now_iso(),
            "description": step.description,
        })
        logger.info("Manifest migrated", extra={"from": previous, "to": version})

    migrated["version"] = target
    return migrated


def validate_migrated_manifest(document: dict[str, Any]) -> dict[str, Any]:
    """Structural check after migrating: hard errors and soft warnings."""
    errors, warnings = [], []
    for field in ("version", "projectId", "sessions", "settings"):
        if field not in document:
            errors.append(f"Missing required field: {field}")

    version = document.get("version")
    if version and not _SEMVER.match(version):
        warnings.append(f'Version "{version}" does not follow semver format')

    for session_id, session in (document.get("sessions") or {}).items():
        if not session.get("sessionId"):
            warnings.append(f"Session {session_id} missing sessionId field")
        if not session.get("originalFile"):
            warnings.append(f"Session {session_id} missing originalFile field")
        if not isinstance(session.get("originalTokens"), int):
            warnings.append(f"Session {session_id} missing or invalid originalTokens field")
        for record in session.get("compressions") or []:
            if record.get("partNumber") is None:
                warnings.append(f"Compression {record.get('versionId')} in {session_id} has no partNumber")

    return {"valid": not errors, "errors": errors, "warnings": warnings}


class MigrationBackups:
    """Backups written to ``.migration-backups`` before a migration is persisted."""

    def __init__(self, paths: StoragePaths | None = None) -> None:
        self.paths = paths or get_storage_paths()

    async def create(self, project_id: str, document: dict[str, Any]) -> Path:
        timestamp = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        timestamp = re.sub(r"[:.]", "-", timestamp)
        version = document.get("version") or BASE_SCHEMA_VERSION
        path = self.paths.backups_dir(project_id) / f"manifest-{version}-{timestamp}.json"
        await async_write_json(path, document)
        logger.info("Manifest backup written", extra={"project_id": project_id, "path": str(path)})
        return path

    def list(self, project_id: str) -> list[dict[str, Any]]:
        """Backups, newest first."""
        backup_dir = self.paths.backups_dir(project_id)
        if not backup_dir.is_dir():
            return []
        backups = []
        for path in backup_dir.glob("manifest-*.json"):
            match = _BACKUP_NAME.match(path.name)
            if not match:
                continue
            stat = path.stat()
            backups.append({
                "file": path.name,
                "path": str(path),
                "version": match.group(1),
                "timestamp": match.group(2),
                "size": stat.st_size,
                "created": stat.st_mtime,
            })
        backups.sort(key=lambda b: (b["created"], b["timestamp"]), reverse=True)
        return backups

    async def restore(
        self,
        project_id: str,
        backup_file: str,
        writer: Callable[[dict[str, Any]], Awaitable[Any]] | None = None,
    ) -> dict[str, Any]:
        """Put a backup back in place of the manifest and return its document.

        Raises:
            NotFoundError: If the backup does not exist
        """
        path = self.paths.backups_dir(project_id) / Path(backup_file).name
        if not path.exists():
            raise NotFoundError(
                f"Backup file not found: {backup_file}",
                code=ErrorCode.VERSION_FILE_NOT_FOUND,
                details={"file": backup_file},
            )
        document = json.loads(await async_read_file(path))
        if writer is not None:
            await writer(document)
        else:
            await async_write_json(self.paths.manifest_path(project_id), document)
        logger.warning("Manifest restored from backup", extra={"project_id": project_id, "file": path.name})
        return document

    async def cleanup(self, project_id: str, keep: int = 5) -> dict[str, int]:
        backups = self.list(project_id)
        if len(backups) <= keep:
            return {"deleted": 0, "kept": len(backups)}
        for backup in backups[keep:]:
            await aiofiles.os.remove(backup["path"])
        return {"deleted": len(backups) - keep, "kept": keep}
