"""Keep-marker management.

Edits change only the marker records in the manifest. Neither the
canonical log nor the synced copy is rewritten, so a changed weight
applies to compressions created after the edit.
"""

from typing import Any

from ..keepit.parser import CONTEXT_CHARS, new_marker_id, normalize_weight, preset_name
from ..models.manifest import KeepitMarker, Manifest, MarkerContext, MarkerPosition, SessionRecord
from ..models.message import utc_now_iso
from ..utils.errors import ErrorCode, NotFoundError, SessionNotFoundError, ValidationError
from ..utils.logger import get_logger
from .manifest_store import ManifestStore, get_manifest_store
from .messages import MessageLoader

logger = get_logger(__name__)


def _check_weight(weight: Any) -> float:
    try:
        value = float(weight)
    except (TypeError, ValueError):
        raise ValidationError("Weight must be a number", field="weight", value=weight)
    if not 0.0 <= value <= 1.0:
        raise ValidationError("Weight must be between 0.00 and 1.00", field="weight", value=weight)
    return normalize_weight(value)


def _find_marker(session: SessionRecord, marker_id: str) -> KeepitMarker:
    for marker in session.keepit_markers:
        if marker.marker_id == marker_id:
            return marker
    raise NotFoundError(
        f"Keep marker {marker_id} not found in session {session.session_id}",
        code=ErrorCode.KEEPIT_NOT_FOUND,
        details={"session_id": session.session_id, "marker_id": marker_id},
    )


def _session_in(manifest: Manifest, project_id: str, session_id: str) -> SessionRecord:
    session = manifest.sessions.get(session_id)
    if session is None:
        raise SessionNotFoundError(session_id, project_id)
    return session


def marker_summary(marker: KeepitMarker) -> dict[str, Any]:
    summary = marker.model_dump(mode="json")
    summary["preset"] = preset_name(marker.weight)
    return summary


class KeepitService:
    """CRUD over a session's keep-marker records."""

    def __init__(self, store: ManifestStore | None = None, loader: MessageLoader | None = None) -> None:
        self.store = store or get_manifest_store()
        self.loader = loader or MessageLoader()

    async def list_markers(self, project_id: str, session_id: str) -> list[KeepitMarker]:
        session = await self.store.get_session(project_id, session_id)
        if session is None:
            raise SessionNotFoundError(session_id, project_id)
        return list(session.keepit_markers)

    async def get_marker(self, project_id: str, session_id: str, marker_id: str) -> KeepitMarker:
        session = await self.store.get_session(project_id, session_id)
        if session is None:
            raise SessionNotFoundError(session_id, project_id)
        return _find_marker(session, marker_id)

    async def update_marker_weight(
        self,
        project_id: str,
        session_id: str,
        marker_id: str,
        weight: float,
    ) -> KeepitMarker:
        """Set a marker's weight.

        Raises:
            ValidationError: Weight outside [0, 1]
            NotFoundError: KEEPIT_NOT_FOUND
        """
        weight = _check_weight(weight)
        async with self.store.transaction(project_id) as manifest:
            marker = _find_marker(_session_in(manifest, project_id, session_id), marker_id)
            previous = marker.weight
            marker.weight = weight
            marker.updated_at = utc_now_iso()

        logger.info(
            "Keep marker weight updated",
            extra={"session_id": session_id, "marker_id": marker_id, "old_weight": previous, "new_weight": weight},
        )
        return marker

    async def add_marker(
        self,
        project_id: str,
        session_id: str,
        message_uuid: str,
        content: str,
        weight: float,
    ) -> KeepitMarker:
        """Record a new marker for text in an existing message.

        The span and context are taken from the message text when the
        content occurs in it; otherwise the span is empty.

        Raises:
            ValidationError: Empty content, bad weight, or unknown message
        """
        weight = _check_weight(weight)
        if not content or not content.strip():
            raise ValidationError("Keep marker content must not be empty", field="content")
        content = content.strip()

        session = await self.store.get_session(project_id, session_id)
        if session is None:
            raise SessionNotFoundError(session_id, project_id)
        messages = await self.loader.load(session.source_file)
        message = next((m for m in messages if m.uuid == message_uuid), None)
        if message is None:
            raise ValidationError(
                f"Message {message_uuid} not found in session {session_id}",
                field="message_uuid",
                value=message_uuid,
            )

        text = message.text_content
        start = text.find(content)
        if start < 0:
            position = MarkerPosition(start=0, end=0)
            context = MarkerContext()
        else:
            end = start + len(content)
            position = MarkerPosition(start=start, end=end)
            context = MarkerContext(
                before=text[max(0, start - CONTEXT_CHARS):start],
                after=text[end:end + CONTEXT_CHARS],
            )

        marker = KeepitMarker(
            marker_id=new_marker_id(),
            message_uuid=message_uuid,
            weight=weight,
            content=content,
            position=position,
            context=context,
            created_at=utc_now_iso(),
        )
        async with self.store.transaction(project_id) as manifest:
            _session_in(manifest, project_id, session_id).keepit_markers.append(marker)

        logger.info("Keep marker added", extra={"session_id": session_id, "marker_id": marker.marker_id})
        return marker

    async def delete_marker(self, project_id: str, session_id: str, marker_id: str) -> KeepitMarker:
        async with self.store.transaction(project_id) as manifest:
            session = _session_in(manifest, project_id, session_id)
            marker = _find_marker(session, marker_id)
            session.keepit_markers = [m for m in session.keepit_markers if m.marker_id != marker_id]

        logger.info("Keep marker deleted", extra={"session_id": session_id, "marker_id": marker_id})
        return marker
