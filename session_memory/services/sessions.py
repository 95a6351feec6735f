"""Session registration and syncing.

Registering a session copies its canonical log into
``originals/{session_id}.jsonl``. The copy is what compressions read; it
only ever grows through ``sync_new_messages``. The canonical log itself is
never written.
"""

import json
import shutil
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from ..keepit.parser import find_markers_in_messages
from ..models.manifest import KeepitMarker, SessionRecord
from ..models.message import Message, parse_timestamp, utc_now_iso
from ..utils.errors import (
    ConflictError,
    ErrorCode,
    SessionNotFoundError,
    SourceMissingError,
    ValidationError,
)
from ..utils.file_utils import async_append_file, async_read_file, async_remove, async_write_file
from ..utils.logger import get_logger, log_execution
from .manifest_store import ManifestStore, get_manifest_store
from .messages import MessageLoader
from .token_counter import Counter, get_token_counter

logger = get_logger(__name__)


def _require_id(value: str, field: str) -> None:
    if not value or not isinstance(value, str):
        raise ValidationError(f"Invalid {field}: must be a non-empty string", field=field, value=value)


def extract_metadata(messages: list[Message]) -> dict[str, Any]:
    """Working directory, branch and client version from the first message's record."""
    metadata: dict[str, Any] = {"gitBranch": None, "projectName": None, "clientVersion": None, "cwd": None}
    if not messages or not messages[0].raw:
        return metadata
    first = messages[0].raw
    metadata["gitBranch"] = first.get("gitBranch")
    metadata["clientVersion"] = first.get("version")
    cwd = first.get("cwd")
    if cwd:
        metadata["cwd"] = cwd
        metadata["projectName"] = Path(cwd).name or "unknown"
    return metadata


def merge_markers(existing: list[KeepitMarker], found: list[KeepitMarker]) -> list[KeepitMarker]:
    """Keep known markers (ids and survival history) and add newly found ones.

    A marker is the same marker when it sits in the same message with the
    same content. Markers added by hand are kept even if the text does not
    contain them.
    """
    known = {(m.message_uuid, m.content): m for m in existing}
    merged = list(existing)
    for marker in found:
        if (marker.message_uuid, marker.content) not in known:
            merged.append(marker)
    return merged


class SessionService:
    """Register, inspect and sync sessions of a project."""

    def __init__(
        self,
        store: ManifestStore | None = None,
        loader: MessageLoader | None = None,
        token_counter: Counter | None = None,
    ) -> None:
        self.store = store or get_manifest_store()
        self.loader = loader or MessageLoader()
        self._token_counter = token_counter

    @property
    def token_counter(self) -> Counter:
        if self._token_counter is None:
            self._token_counter = get_token_counter()
        return self._token_counter

    async def _require_session(self, project_id: str, session_id: str) -> SessionRecord:
        session = await self.store.get_session(project_id, session_id)
        if session is None:
            raise SessionNotFoundError(session_id, project_id)
        return session

    async def _copy_source(self, project_id: str, session_id: str, source: str) -> Path:
        target = self.store.paths.original_copy_path(project_id, session_id)
        await async_write_file(target, await async_read_file(source))
        return target

    @log_execution
    async def register_session(self, project_id: str, session_id: str, original_path: str | Path) -> SessionRecord:
        """Add a session to the project's manifest.

        Args:
            project_id: Project identifier
            session_id: Session identifier
            original_path: Canonical JSONL log of the session

        Returns:
            The new session record

        Raises:
            ConflictError: SESSION_ALREADY_REGISTERED
            SourceMissingError: The log does not exist
            SessionParseError: The log cannot be parsed
        """
        _require_id(project_id, "project_id")
        _require_id(session_id, "session_id")
        original_path = str(original_path)

        if await self.store.get_session(project_id, session_id) is not None:
            raise self._already_registered(project_id, session_id)
        if not Path(original_path).is_file():
            raise SourceMissingError(original_path)

        messages = await self.loader.load(original_path)
        markers = find_markers_in_messages(messages)
        now = utc_now_iso()

        async with self.store.transaction(project_id) as manifest:
            if session_id in manifest.sessions:
                raise self._already_registered(project_id, session_id)
            copy_path = await self._copy_source(project_id, session_id, original_path)
            record = SessionRecord(
                session_id=session_id,
                original_file=original_path,
                linked_file=str(copy_path),
                link_type="copy",
                original_tokens=self.token_counter.count_messages(messages),
                original_messages=len(messages),
                first_timestamp=messages[0].timestamp if messages else None,
                last_timestamp=messages[-1].timestamp if messages else None,
                registered_at=now,
                last_accessed=now,
                last_synced_timestamp=messages[-1].timestamp if messages else None,
                last_synced_message_uuid=messages[-1].uuid if messages else None,
                metadata=extract_metadata(messages),
                keepit_markers=markers,
            )
            manifest.sessions[session_id] = record

        logger.info(
            "Session registered",
            extra={
                "project_id": project_id,
                "session_id": session_id,
                "messages": record.original_messages,
                "tokens": record.original_tokens,
                "keepit_markers": len(markers),
            },
        )
        return record

    @staticmethod
    def _already_registered(project_id: str, session_id: str) -> ConflictError:
        return ConflictError(
            f"Session {session_id} is already registered in project {project_id}",
            code=ErrorCode.SESSION_ALREADY_REGISTERED,
            details={"project_id": project_id, "session_id": session_id},
        )

    async def unregister_session(
        self,
        project_id: str,
        session_id: str,
        delete_summaries: bool = False,
    ) -> SessionRecord:
        """Remove the session's manifest entry and its synced copy.

        The canonical log is left alone. Compression artifacts are removed
        only with ``delete_summaries``.
        """
        async with self.store.transaction(project_id) as manifest:
            removed = manifest.sessions.pop(session_id, None)
            if removed is None:
                raise SessionNotFoundError(session_id, project_id)

        if removed.linked_file and removed.linked_file != removed.original_file:
            await async_remove(removed.linked_file)
        if delete_summaries:
            summaries = self.store.paths.summaries_dir(project_id, session_id)
            if summaries.is_dir():
                shutil.rmtree(summaries)

        logger.info(
            "Session unregistered",
            extra={"project_id": project_id, "session_id": session_id, "summaries_deleted": delete_summaries},
        )
        return removed

    async def get_session_details(
        self,
        project_id: str,
        session_id: str,
        update_last_accessed: bool = True,
    ) -> SessionRecord:
        if not update_last_accessed:
            return await self._require_session(project_id, session_id)
        async with self.store.transaction(project_id) as manifest:
            session = manifest.sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(session_id, project_id)
            session.last_accessed = utc_now_iso()
        return session

    async def list_sessions(self, project_id: str) -> list[SessionRecord]:
        return await self.store.list_sessions(project_id)

    async def is_registered(self, project_id: str, session_id: str) -> bool:
        return await self.store.get_session(project_id, session_id) is not None

    @log_execution
    async def refresh_session(self, project_id: str, session_id: str) -> SessionRecord:
        """Re-read the canonical log, replace the synced copy and recount.

        Known keep markers keep their ids and survival history.

        Raises:
            SessionNotFoundError: Not registered
            SourceMissingError: The canonical log is gone
        """
        session = await self._require_session(project_id, session_id)
        if not Path(session.original_file).is_file():
            raise SourceMissingError(session.original_file)
        messages = await self.loader.load(session.original_file)
        found = find_markers_in_messages(messages)

        async with self.store.transaction(project_id) as manifest:
            current = manifest.sessions.get(session_id)
            if current is None:
                raise SessionNotFoundError(session_id, project_id)
            copy_path = await self._copy_source(project_id, session_id, current.original_file)
            current.linked_file = str(copy_path)
            current.link_type = "copy"
            current.original_tokens = self.token_counter.count_messages(messages)
            current.original_messages = len(messages)
            current.first_timestamp = messages[0].timestamp if messages else None
            current.last_timestamp = messages[-1].timestamp if messages else None
            current.last_synced_timestamp = current.last_timestamp
            current.last_synced_message_uuid = messages[-1].uuid if messages else None
            current.last_accessed = utc_now_iso()
            current.metadata = extract_metadata(messages)
            current.keepit_markers = merge_markers(current.keepit_markers, found)

        logger.info("Session refreshed", extra={"project_id": project_id, "session_id": session_id})
        return current

    async def stale_sessions(self, project_id: str, days: int = 30) -> list[SessionRecord]:
        """Sessions not accessed within ``days`` (or never)."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        stale = []
        for session in await self.store.list_sessions(project_id):
            accessed = parse_timestamp(session.last_accessed)
            if accessed is None or accessed < cutoff:
                stale.append(session)
        return stale

    async def project_stats(self, project_id: str) -> dict[str, Any]:
        sessions = await self.store.list_sessions(project_id)
        total_tokens = sum(s.original_tokens for s in sessions)
        total_messages = sum(s.original_messages for s in sessions)
        count = len(sessions)
        return {
            "session_count": count,
            "total_tokens": total_tokens,
            "total_messages": total_messages,
            "total_compressions": sum(len(s.compressions) for s in sessions),
            "sessions_with_compressions": sum(1 for s in sessions if s.compressions),
            "average_tokens_per_session": round(total_tokens / count) if count else 0,
            "average_messages_per_session": round(total_messages / count) if count else 0,
        }

    async def _synced_uuids(self, session: SessionRecord) -> set[str]:
        copy = session.linked_file
        if copy and copy != session.original_file and Path(copy).is_file():
            return {r["uuid"] for r in await self.loader.load_records(copy) if r.get("uuid")}
        return {session.last_synced_message_uuid} if session.last_synced_message_uuid else set()

    async def _pending_records(self, session: SessionRecord) -> list[dict[str, Any]]:
        """Canonical log records missing from the synced copy, oldest first.

        Records older than the last synced one are skipped outright; records
        sharing its timestamp are told apart by uuid.
        """
        records = await self.loader.load_records(session.original_file)
        last_synced = parse_timestamp(session.last_synced_timestamp or session.last_timestamp)
        synced = await self._synced_uuids(session)
        pending = []
        for record in records:
            stamp = parse_timestamp(record.get("timestamp"))
            if stamp is None:
                continue
            if last_synced is not None and stamp < last_synced:
                continue
            uuid = record.get("uuid")
            if uuid in synced:
                continue
            if not uuid and last_synced is not None and stamp == last_synced:
                continue
            pending.append((stamp, record))
        pending.sort(key=lambda item: item[0])
        return [record for _, record in pending]

    @log_execution
    async def sync_new_messages(self, project_id: str, session_id: str) -> dict[str, Any]:
        """Append records added to the canonical log since the last sync to the synced copy.

        Existing lines of the copy are never rewritten, so part message
        ranges stay valid.

        Returns:
            ``{"synced", "new_messages", "last_synced_timestamp"}``
        """
        session = await self._require_session(project_id, session_id)
        if not session.linked_file or session.linked_file == session.original_file:
            return {"synced": False, "new_messages": 0, "last_synced_timestamp": session.last_synced_timestamp}

        pending = await self._pending_records(session)
        if not pending:
            return {"synced": False, "new_messages": 0, "last_synced_timestamp": session.last_synced_timestamp}

        copy_path = Path(session.linked_file)
        prefix = ""
        if copy_path.is_file():
            existing = await async_read_file(copy_path)
            if existing and not existing.endswith("\n"):
                prefix = "\n"
        lines = "".join(json.dumps(r, ensure_ascii=False) + "\n" for r in pending)
        await async_append_file(copy_path, prefix + lines)

        messages = await self.loader.load(copy_path)
        found = find_markers_in_messages(messages)
        last = pending[-1]

        async with self.store.transaction(project_id) as manifest:
            current = manifest.sessions.get(session_id)
            if current is None:
                raise SessionNotFoundError(session_id, project_id)
            current.original_messages = len(messages)
            current.original_tokens = self.token_counter.count_messages(messages)
            current.last_timestamp = messages[-1].timestamp if messages else current.last_timestamp
            current.last_synced_timestamp = last.get("timestamp")
            current.last_synced_message_uuid = last.get("uuid")
            current.keepit_markers = merge_markers(current.keepit_markers, found)

        logger.info(
            "Session synced",
            extra={"project_id": project_id, "session_id": session_id, "new_records": len(pending)},
        )
        return {
            "synced": True,
            "new_messages": len(pending),
            "last_synced_timestamp": last.get("timestamp"),
        }

    async def sync_status(self, project_id: str, session_id: str) -> dict[str, Any]:
        """Compare the canonical log with the synced copy without changing either."""
        session = await self._require_session(project_id, session_id)
        pending = await self._pending_records(session)
        original_count = len(await self.loader.load(session.original_file))
        return {
            "session_id": session_id,
            "original_messages": original_count,
            "synced_messages": session.original_messages,
            "pending_records": len(pending),
            "needs_sync": bool(pending),
            "last_synced_timestamp": session.last_synced_timestamp,
            "last_synced_message_uuid": session.last_synced_message_uuid,
        }
