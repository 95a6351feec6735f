"""Compression orchestrator.

Runs one compression of a session (whole session, next delta part, or a
re-compression of an existing part) under the session's compression lock:

1. validate settings (before any I/O)
2. take the lock; a held lock fails fast with COMPRESSION_IN_PROGRESS
3. read the synced message source and pick the message slice
4. call the summarizer and time it
5. write the version artifacts
6. append the compression record and keep-marker history in one manifest commit

A failure at any step leaves no record behind; artifacts written before a
failed commit are removed again. The lock is released on every path.
"""

import time
from typing import Any

from ..config.manager import get_config
from ..keepit.decay import DecayDecision, DecayModel
from ..keepit.verifier import verify_preservation
from ..models.manifest import (
    CompressionRecord,
    KeepitMarker,
    KeepitStats,
    MessageRange,
    SessionRecord,
)
from ..models.message import Message, utc_now_iso
from ..models.settings import CompressionSettings, TieredSettings, UniformSettings, parse_settings
from ..utils.errors import (
    CompressionFailedError,
    ErrorCode,
    InsufficientMessagesError,
    NoDeltaError,
    NotFoundError,
    SessionMemoryError,
    SessionNotFoundError,
    ValidationError,
    VersionExistsError,
)
from ..utils.logger import bind_operation_context, get_logger, log_execution
from . import delta as parts
from .artifacts import ArtifactStore, artifact_label
from .locks import OperationType, SessionLockRegistry, get_lock_registry
from .manifest_store import ManifestStore, get_manifest_store
from .messages import MessageLoader, Summarizer, coerce_message
from .token_counter import Counter, get_token_counter

logger = get_logger(__name__)

MIN_MESSAGES = 2
DEFAULT_SESSION_DISTANCE = 1


class CompressionOrchestrator:
    """Creates compression versions of registered sessions."""

    def __init__(
        self,
        summarizer: Summarizer,
        store: ManifestStore | None = None,
        locks: SessionLockRegistry | None = None,
        loader: MessageLoader | None = None,
        token_counter: Counter | None = None,
        artifacts: ArtifactStore | None = None,
        decay: DecayModel | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            summarizer: External summarization capability
            store: Manifest repository
            locks: Session lock registry (shared by every caller that compresses)
            loader: Session file reader
            token_counter: Token counter (defaults to tiktoken cl100k_base)
            artifacts: Artifact writer
            decay: Keep-marker decay model
        """
        self.summarizer = summarizer
        self.store = store or get_manifest_store()
        self.locks = locks or get_lock_registry()
        self.loader = loader or MessageLoader()
        self._token_counter = token_counter
        self.artifacts = artifacts or ArtifactStore(self.store.paths)
        self.decay = decay or DecayModel(get_config().decay)

    @property
    def token_counter(self) -> Counter:
        if self._token_counter is None:
            self._token_counter = get_token_counter()
        return self._token_counter

    async def _load_session(self, project_id: str, session_id: str) -> SessionRecord:
        manifest = await self.store.load(project_id)
        session = manifest.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id, project_id)
        return session

    @log_execution
    async def create_compression(
        self,
        project_id: str,
        session_id: str,
        settings: "CompressionSettings | dict[str, Any] | None",
        delta_only: bool = False,
    ) -> CompressionRecord:
        """Compress the whole session, or only its delta as the next part.

        Raises:
            InvalidSettingsError: Before any I/O
            CompressionInProgressError: Another compression holds the lock
            SessionNotFoundError / SourceMissingError / SessionParseError
            NoDeltaError / InsufficientMessagesError: Nothing useful to compress
            CompressionFailedError: The summarizer raised
        """
        settings = parse_settings(settings)

        with bind_operation_context(project_id=project_id, session_id=session_id, operation="compression"):
            with self.locks.acquire(project_id, session_id, OperationType.COMPRESSION):
                session = await self._load_session(project_id, session_id)
                messages = await self.loader.load(session.source_file)

                if delta_only:
                    found = parts.detect_delta(messages, session)
                    if not found.has_delta:
                        raise NoDeltaError(session_id)
                    if found.delta_count < MIN_MESSAGES:
                        raise InsufficientMessagesError(found.delta_count, MIN_MESSAGES)
                    subset = found.delta_messages
                    part_number = found.next_part_number
                    message_range = MessageRange(
                        start_index=found.start_index,
                        end_index=found.end_index,
                        message_count=found.delta_count,
                        start_timestamp=found.start_timestamp,
                        end_timestamp=found.end_timestamp,
                    )
                    is_full_session = False
                else:
                    if len(messages) < MIN_MESSAGES:
                        raise InsufficientMessagesError(len(messages), MIN_MESSAGES)
                    subset = messages
                    part_number = 1
                    message_range = MessageRange(
                        start_index=0,
                        end_index=len(messages),
                        message_count=len(messages),
                        start_timestamp=messages[0].timestamp,
                        end_timestamp=messages[-1].timestamp,
                    )
                    self._check_full_session_range(session, message_range)
                    is_full_session = True

                return await self._compress(
                    project_id,
                    session,
                    subset,
                    settings,
                    part_number=part_number,
                    message_range=message_range,
                    is_full_session=is_full_session,
                )

    def _check_full_session_range(self, session: SessionRecord, message_range: MessageRange) -> None:
        """Whole-session versions are part 1; they may not redefine an existing part 1 slice."""
        for version in parts.part_versions(session, 1):
            existing = version.message_range
            if existing and not existing.same_slice(message_range):
                raise ValidationError(
                    f"Part 1 already covers messages {existing.start_index}..{existing.end_index}; "
                    "use delta compression for newer messages",
                    field="delta_only",
                    code=ErrorCode.INVALID_PART,
                )

    @log_execution
    async def recompress_part(
        self,
        project_id: str,
        session_id: str,
        part_number: int,
        settings: "CompressionSettings | dict[str, Any] | None",
    ) -> CompressionRecord:
        """Compress an existing part's slice again at a level it does not have yet.

        Raises:
            NotFoundError: PART_NOT_FOUND
            ValidationError: INVALID_PART when the part has no message range
            VersionExistsError: The part already has a version at this level
        """
        settings = parse_settings(settings)

        with bind_operation_context(project_id=project_id, session_id=session_id, operation="recompression"):
            with self.locks.acquire(project_id, session_id, OperationType.COMPRESSION):
                session = await self._load_session(project_id, session_id)
                versions = parts.part_versions(session, part_number)
                if not versions:
                    raise NotFoundError(
                        f"Part {part_number} not found in session {session_id}",
                        code=ErrorCode.PART_NOT_FOUND,
                        details={"session_id": session_id, "part_number": part_number},
                    )
                reference = next((v for v in reversed(versions) if v.message_range is not None), None)
                if reference is None:
                    raise ValidationError(
                        f"Part {part_number} has no message range",
                        field="part_number",
                        value=part_number,
                        code=ErrorCode.INVALID_PART,
                    )
                level = settings.compression_level
                if not parts.can_recompress_part(session, part_number, level):
                    raise VersionExistsError(part_number, level.value)

                messages = await self.loader.load(session.source_file)
                message_range = reference.message_range.model_copy()
                subset = messages[message_range.start_index:message_range.end_index]
                if len(subset) < MIN_MESSAGES:
                    raise InsufficientMessagesError(len(subset), MIN_MESSAGES)

                return await self._compress(
                    project_id,
                    session,
                    subset,
                    settings,
                    part_number=part_number,
                    message_range=message_range,
                    is_full_session=reference.is_full_session,
                    input_tokens=reference.input_tokens or None,
                )

    async def delta_status(self, project_id: str, session_id: str) -> dict[str, Any]:
        """Pending delta of a session; source problems are reported, not raised."""
        session = await self._load_session(project_id, session_id)
        try:
            messages = await self.loader.load(session.source_file)
        except SessionMemoryError as e:
            current = parts.highest_part_number(session)
            return {
                "session_id": session_id,
                "has_delta": False,
                "delta_message_count": 0,
                "delta_range": None,
                "current_part_count": current,
                "next_part_number": current + 1,
                "error": e.message,
            }
        return parts.delta_status(messages, session)

    def _keepit_decisions(
        self,
        markers: list[KeepitMarker],
        settings: UniformSettings | TieredSettings,
    ) -> list[DecayDecision]:
        if settings.keepit_mode == "preserve-all":
            return [
                DecayDecision(m.marker_id, m.weight, 0.0, True, self.decay.is_pinned(m.weight))
                for m in markers
            ]
        distance = settings.session_distance if settings.session_distance is not None else DEFAULT_SESSION_DISTANCE
        return self.decay.decide(markers, distance, settings.effective_ratio, settings.compression_level)

    async def _summarize(
        self,
        subset: list[Message],
        settings: UniformSettings | TieredSettings,
    ) -> tuple[list[Message], Any, int]:
        started = time.monotonic()
        try:
            result = await self.summarizer.summarize(subset, settings)
            output = [coerce_message(m) for m in result["messages"]]
        except Exception as e:
            logger.error(
                "Summarizer failed",
                extra={"error": str(e), "error_type": type(e).__name__, "input_messages": len(subset)},
            )
            raise CompressionFailedError(str(e)) from e
        elapsed_ms = int((time.monotonic() - started) * 1000)
        return output, result.get("tier_results"), elapsed_ms

    async def _compress(
        self,
        project_id: str,
        session: SessionRecord,
        subset: list[Message],
        settings: UniformSettings | TieredSettings,
        part_number: int,
        message_range: MessageRange,
        is_full_session: bool,
        input_tokens: int | None = None,
    ) -> CompressionRecord:
        session_id = session.session_id
        version_id = parts.generate_part_version_id(session, part_number)
        logger.info(
            "Compression started",
            extra={
                "version_id": version_id,
                "part_number": part_number,
                "input_messages": len(subset),
                "mode": settings.mode,
                "preset": settings.preset_label,
            },
        )

        output, tier_results, elapsed_ms = await self._summarize(subset, settings)

        if input_tokens is None:
            input_tokens = self.token_counter.count_messages(subset)
        output_tokens = self.token_counter.count_messages(output)
        ratio = round(input_tokens / max(output_tokens, 1), 2)

        uuids = {m.uuid for m in subset}
        markers = [m for m in session.keepit_markers if m.message_uuid in uuids]
        stats = KeepitStats()
        decisions: list[DecayDecision] = []
        if settings.keepit_mode != "ignore" and markers:
            decisions = self._keepit_decisions(markers, settings)
            compressed_text = "\n\n".join(m.text_content for m in output)
            verification = verify_preservation(markers, compressed_text, decisions)
            stats = KeepitStats(
                preserved=sum(1 for d in decisions if d.survives),
                summarized=sum(1 for d in decisions if not d.survives),
                unverified=len(verification.missing),
                weights={m.marker_id: m.weight for m in markers},
            )

        label = artifact_label(version_id, settings, output_tokens, part_number)
        try:
            file_sizes = await self.artifacts.write_version(
                project_id,
                session_id,
                label,
                output,
                metadata={
                    "session_id": session_id,
                    "version_id": version_id,
                    "part_number": part_number,
                    "mode": settings.mode,
                    "preset": settings.preset_label,
                    "compression_level": settings.compression_level.value,
                    "input_tokens": input_tokens,
                    "output_tokens": output_tokens,
                    "compression_ratio": ratio,
                },
                tier_results=tier_results,
            )
        except FileExistsError as e:
            raise VersionExistsError(part_number, settings.compression_level.value) from e

        record = CompressionRecord(
            version_id=version_id,
            file=label,
            created_at=utc_now_iso(),
            settings=settings,
            input_tokens=input_tokens,
            input_messages=len(subset),
            output_tokens=output_tokens,
            output_messages=len(output),
            compression_ratio=ratio,
            processing_time_ms=elapsed_ms,
            keepit_stats=stats,
            file_sizes=file_sizes,
            tier_results=tier_results,
            part_number=part_number,
            compression_level=settings.compression_level,
            is_full_session=is_full_session,
            message_range=message_range,
        )

        try:
            async with self.store.transaction(project_id) as manifest:
                current = manifest.sessions.get(session_id)
                if current is None:
                    raise SessionNotFoundError(session_id, project_id)
                if current.find_compression(version_id) is not None:
                    raise VersionExistsError(part_number, settings.compression_level.value)
                current.compressions.append(record)
                current.last_accessed = utc_now_iso()
                self._record_marker_history(current, decisions, version_id)
        except Exception:
            removed = await self.artifacts.remove_version(project_id, session_id, label)
            logger.warning(
                "Manifest commit failed, artifacts removed",
                extra={"version_id": version_id, "removed": len(removed)},
            )
            raise

        logger.info(
            "Compression completed",
            extra={
                "version_id": version_id,
                "part_number": part_number,
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "compression_ratio": ratio,
                "duration_ms": elapsed_ms,
                "keepit_unverified": stats.unverified,
            },
        )
        return record

    @staticmethod
    def _record_marker_history(session: SessionRecord, decisions: list[DecayDecision], version_id: str) -> None:
        outcome = {d.marker_id: d.survives for d in decisions}
        for marker in session.keepit_markers:
            if marker.marker_id not in outcome:
                continue
            target = marker.survived_in if outcome[marker.marker_id] else marker.summarized_in
            if version_id not in target:
                target.append(version_id)
