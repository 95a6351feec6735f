"""Part and delta bookkeeping.

A part is a contiguous, never-changing slice of a session's messages; every
compression of the same slice is a version of that part. The delta is the
suffix of messages no part covers yet.

Index continuity is authoritative: the synced source is append-only, so
the messages at ``index >= latest part end`` are the delta. A message
before that index whose timestamp is newer than the part's end timestamp
means the source was rewritten; it is logged as an integrity warning and
not pulled into the delta.
"""

from dataclasses import dataclass, field
from typing import Any

from ..models.manifest import CompressionRecord, SessionRecord
from ..models.message import Message, parse_timestamp, timestamp_sort_key
from ..models.settings import CompressionLevel
from ..utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class DeltaResult:
    has_delta: bool
    delta_messages: list[Message]
    start_index: int
    end_index: int
    start_timestamp: str | None
    end_timestamp: str | None
    is_first_part: bool
    previous_part_number: int
    last_compressed_timestamp: str | None = None
    divergent_uuids: list[str] = field(default_factory=list)

    @property
    def delta_count(self) -> int:
        return len(self.delta_messages)

    @property
    def next_part_number(self) -> int:
        return self.previous_part_number + 1


def highest_part_number(session: SessionRecord) -> int:
    """Max part number across the session's compressions, 0 if none."""
    numbers = [c.part_number for c in session.compressions if c.part_number is not None]
    return max(numbers) if numbers else 0


def _created_key(record: CompressionRecord):
    return parse_timestamp(record.created_at) or parse_timestamp("1970-01-01T00:00:00Z")


def latest_part(session: SessionRecord) -> CompressionRecord | None:
    """Most recently created version of the highest part."""
    highest = highest_part_number(session)
    if highest == 0:
        return None
    candidates = [c for c in session.compressions if c.part_number == highest]
    return max(candidates, key=_created_key)


def last_compression_end_timestamp(session: SessionRecord) -> str | None:
    ends = [
        c.message_range.end_timestamp
        for c in session.compressions
        if c.message_range and c.message_range.end_timestamp
    ]
    if not ends:
        return None
    return max(ends, key=lambda ts: parse_timestamp(ts) or parse_timestamp("1970-01-01T00:00:00Z"))


def detect_delta(messages: list[Message], session: SessionRecord) -> DeltaResult:
    """Messages not covered by any part yet.

    Args:
        messages: The session's full ordered message sequence
        session: Its manifest record
    """
    latest = latest_part(session)

    if latest is None or latest.message_range is None:
        ordered = sorted(messages, key=timestamp_sort_key)
        return DeltaResult(
            has_delta=bool(ordered),
            delta_messages=ordered,
            start_index=0,
            end_index=len(ordered),
            start_timestamp=ordered[0].timestamp if ordered else None,
            end_timestamp=ordered[-1].timestamp if ordered else None,
            is_first_part=True,
            previous_part_number=0,
        )

    last_end_index = latest.message_range.end_index
    last_end_timestamp = last_compression_end_timestamp(session)
    last_end = parse_timestamp(last_end_timestamp)

    delta = messages[last_end_index:]
    divergent = []
    if last_end is not None:
        for message in messages[:last_end_index]:
            stamp = message.parsed_timestamp
            if stamp is not None and stamp > last_end:
                divergent.append(message.uuid)
    if divergent:
        logger.warning(
            "Messages inside compressed parts are newer than the last part end",
            extra={
                "session_id": session.session_id,
                "last_end_index": last_end_index,
                "last_end_timestamp": last_end_timestamp,
                "divergent_count": len(divergent),
            },
        )

    delta = sorted(delta, key=timestamp_sort_key)
    return DeltaResult(
        has_delta=bool(delta),
        delta_messages=delta,
        start_index=last_end_index,
        end_index=last_end_index + len(delta),
        start_timestamp=delta[0].timestamp if delta else None,
        end_timestamp=delta[-1].timestamp if delta else None,
        is_first_part=False,
        previous_part_number=latest.part_number or 0,
        last_compressed_timestamp=last_end_timestamp,
        divergent_uuids=divergent,
    )


def delta_status(messages: list[Message], session: SessionRecord) -> dict[str, Any]:
    """Summary of pending work without the messages themselves."""
    delta = detect_delta(messages, session)
    return {
        "session_id": session.session_id,
        "has_delta": delta.has_delta,
        "delta_message_count": delta.delta_count,
        "delta_range": {
            "start_index": delta.start_index,
            "end_index": delta.end_index,
            "start_timestamp": delta.start_timestamp,
            "end_timestamp": delta.end_timestamp,
        } if delta.has_delta else None,
        "current_part_count": highest_part_number(session),
        "next_part_number": highest_part_number(session) + 1,
        "divergent_message_count": len(delta.divergent_uuids),
    }


def _level_ordinal(record: CompressionRecord) -> int:
    if record.compression_level is None:
        return CompressionLevel.MODERATE.ordinal
    return record.compression_level.ordinal


def part_versions(session: SessionRecord, part_number: int) -> list[CompressionRecord]:
    """Versions of one part; records without a part number count as part 1."""
    return [c for c in session.compressions if (c.part_number or 1) == part_number]


def parts_by_number(session: SessionRecord) -> dict[int, list[CompressionRecord]]:
    """Versions grouped by part, ascending part number, each lightest level first."""
    parts: dict[int, list[CompressionRecord]] = {}
    for record in session.compressions:
        parts.setdefault(record.part_number or 1, []).append(record)
    return {number: sorted(parts[number], key=_level_ordinal) for number in sorted(parts)}


def can_recompress_part(
    session: SessionRecord,
    part_number: int,
    level: CompressionLevel | str,
) -> bool:
    """False if the part already has a version at ``level``."""
    level = CompressionLevel(level)
    return not any(v.compression_level == level for v in part_versions(session, part_number))


def generate_part_version_id(session: SessionRecord, part_number: int) -> str:
    """Next ``part{N}_v{NNN}`` label for the part.

    Numbered past the highest existing label, so a deleted version's label
    is never handed out again while later versions exist.
    """
    prefix = f"part{part_number}_v"
    highest = 0
    for version in part_versions(session, part_number):
        if version.version_id.startswith(prefix):
            suffix = version.version_id[len(prefix):]
            if suffix.isdigit():
                highest = max(highest, int(suffix))
    highest = max(highest, len(part_versions(session, part_number)))
    return f"{prefix}{highest + 1:03d}"
