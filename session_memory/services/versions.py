"""Listing, reading and deleting compression versions.

Every session also exposes the pseudo-version ``original``: the unmodified
messages, ratio 1.0. It can be read but never deleted.
"""

from pathlib import Path
from typing import Any

from ..models.manifest import CompressionRecord, SessionRecord
from ..utils.errors import (
    ConflictError,
    ErrorCode,
    NotFoundError,
    SessionNotFoundError,
    SourceMissingError,
    ValidationError,
)
from ..utils.file_utils import async_read_file
from ..utils.logger import get_logger
from .artifacts import ARTIFACT_FORMATS, ArtifactStore, render_original_markdown
from .manifest_store import ManifestStore, get_manifest_store
from .messages import MessageLoader

logger = get_logger(__name__)

ORIGINAL_VERSION = "original"


def original_version(session: SessionRecord) -> dict[str, Any]:
    return {
        "version_id": ORIGINAL_VERSION,
        "is_original": True,
        "file": None,
        "created_at": session.registered_at,
        "output_tokens": session.original_tokens,
        "output_messages": session.original_messages,
        "compression_ratio": 1.0,
    }


def version_summary(record: CompressionRecord) -> dict[str, Any]:
    summary = record.model_dump(mode="json")
    summary["is_original"] = False
    return summary


def find_version(session: SessionRecord, version_id: str) -> CompressionRecord:
    """Raises NotFoundError (VERSION_NOT_FOUND) for unknown ids."""
    record = session.find_compression(version_id)
    if record is None:
        raise NotFoundError(
            f"Version {version_id} not found for session {session.session_id}",
            code=ErrorCode.VERSION_NOT_FOUND,
            details={"session_id": session.session_id, "version_id": version_id},
        )
    return record


def check_format(fmt: str) -> None:
    if fmt not in ARTIFACT_FORMATS:
        raise ValidationError(
            f"Invalid format: {fmt}. Must be one of: {', '.join(ARTIFACT_FORMATS)}",
            field="format",
            value=fmt,
            code=ErrorCode.INVALID_FORMAT,
        )


class VersionService:
    """Read and prune the versions of a session."""

    def __init__(
        self,
        store: ManifestStore | None = None,
        artifacts: ArtifactStore | None = None,
        loader: MessageLoader | None = None,
    ) -> None:
        self.store = store or get_manifest_store()
        self.artifacts = artifacts or ArtifactStore(self.store.paths)
        self.loader = loader or MessageLoader()

    async def _session(self, project_id: str, session_id: str) -> SessionRecord:
        session = await self.store.get_session(project_id, session_id)
        if session is None:
            raise SessionNotFoundError(session_id, project_id)
        return session

    async def list_versions(self, project_id: str, session_id: str) -> list[dict[str, Any]]:
        """``original`` first, then compressions newest first."""
        session = await self._session(project_id, session_id)
        records = sorted(session.compressions, key=lambda c: c.created_at, reverse=True)
        return [original_version(session)] + [version_summary(r) for r in records]

    async def get_version(self, project_id: str, session_id: str, version_id: str) -> dict[str, Any]:
        session = await self._session(project_id, session_id)
        if version_id == ORIGINAL_VERSION:
            return original_version(session)
        return version_summary(find_version(session, version_id))

    async def get_version_content(
        self,
        project_id: str,
        session_id: str,
        version_id: str,
        fmt: str = "md",
    ) -> str:
        """Artifact text of a version.

        Raises:
            ValidationError: INVALID_FORMAT
            NotFoundError: VERSION_NOT_FOUND, or VERSION_FILE_NOT_FOUND when the artifact is gone
        """
        check_format(fmt)
        session = await self._session(project_id, session_id)
        if version_id == ORIGINAL_VERSION:
            if fmt == "jsonl":
                if not Path(session.source_file).is_file():
                    raise SourceMissingError(session.source_file)
                return await async_read_file(session.source_file)
            return render_original_markdown(await self.loader.load(session.source_file))

        record = find_version(session, version_id)
        try:
            return await self.artifacts.read_version(project_id, session_id, record.file, fmt)
        except FileNotFoundError as e:
            logger.warning(
                "Version artifact missing",
                extra={"session_id": session_id, "version_id": version_id, "format": fmt},
            )
            raise NotFoundError(
                f"Version file not found: {record.file}.{fmt}",
                code=ErrorCode.VERSION_FILE_NOT_FOUND,
                details={"version_id": version_id, "format": fmt},
            ) from e

    async def compositions_using(self, project_id: str, session_id: str, version_id: str) -> list[str]:
        manifest = await self.store.load(project_id)
        return [
            composition_id
            for composition_id, composition in manifest.compositions.items()
            if composition.references(session_id, version_id)
        ]

    async def delete_version(
        self,
        project_id: str,
        session_id: str,
        version_id: str,
        force: bool = False,
    ) -> dict[str, Any]:
        """Remove a version record and its artifacts.

        Raises:
            ValidationError: CANNOT_DELETE_ORIGINAL
            ConflictError: VERSION_IN_USE when a composition references it and ``force`` is off
        """
        if version_id == ORIGINAL_VERSION:
            raise ValidationError(
                "Cannot delete the original version",
                field="version_id",
                value=version_id,
                code=ErrorCode.CANNOT_DELETE_ORIGINAL,
            )

        async with self.store.transaction(project_id) as manifest:
            session = manifest.sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(session_id, project_id)
            record = find_version(session, version_id)
            users = [cid for cid, c in manifest.compositions.items() if c.references(session_id, version_id)]
            if users and not force:
                raise ConflictError(
                    f"Version {version_id} is used by {len(users)} composition(s)",
                    code=ErrorCode.VERSION_IN_USE,
                    details={"version_id": version_id, "compositions": users},
                )
            session.compressions = [c for c in session.compressions if c.version_id != version_id]
            for marker in session.keepit_markers:
                marker.survived_in = [v for v in marker.survived_in if v != version_id]
                marker.summarized_in = [v for v in marker.summarized_in if v != version_id]

        removed = await self.artifacts.remove_version(project_id, session_id, record.file)
        logger.info(
            "Version deleted",
            extra={"session_id": session_id, "version_id": version_id, "forced": bool(users), "files": len(removed)},
        )
        return {"deleted": version_id, "files_removed": removed, "used_in_compositions": users}
