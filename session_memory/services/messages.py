"""Message sources and the summarizer collaborator contract.

Session logs are JSONL files. Conversation records look like::

    {"type": "user", "uuid": "...", "parentUuid": "...", "timestamp": "...",
     "message": {"role": "user", "content": "text" | [{"type": "text", "text": "..."}]}}

Already-normalized records (``{"uuid", "role", "content"}``) are accepted
too. Records of other types (summaries, file snapshots) are ignored.
"""

import json
from pathlib import Path
from typing import Any, Protocol, TypedDict, runtime_checkable

import aiofiles

from ..models.message import Message
from ..models.settings import TieredSettings, UniformSettings
from ..utils.errors import SessionParseError, SourceMissingError
from ..utils.logger import get_logger

logger = get_logger(__name__)

_CONVERSATION_TYPES = {"user", "assistant", "system"}


class SummarizerResult(TypedDict, total=False):
    messages: list[Any]
    tier_results: Any


@runtime_checkable
class Summarizer(Protocol):
    """External summarization capability.

    Must keep ``uuid`` linkage on returned messages and be safe to retry
    with identical input.
    """

    async def summarize(
        self,
        messages: list[Message],
        settings: UniformSettings | TieredSettings,
    ) -> SummarizerResult:
        ...


def extract_text(content: Any) -> str:
    """Flatten message content (string or block list) to plain text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, dict):
        content = [content]
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type", "text") == "text" and isinstance(block.get("text"), str):
            parts.append(block["text"])
    return "\n".join(parts)


def record_to_message(record: dict[str, Any]) -> Message | None:
    """Build a ``Message`` from one JSONL record; None for non-conversation records."""
    body = record.get("message") if isinstance(record.get("message"), dict) else {}
    role = body.get("role") or record.get("role") or record.get("type")
    record_type = record.get("type", role)
    if record_type not in _CONVERSATION_TYPES or role not in _CONVERSATION_TYPES:
        return None
    uuid = record.get("uuid")
    if not uuid:
        return None
    content = body.get("content") if body else record.get("content", record.get("textContent"))
    return Message(
        uuid=uuid,
        parent_uuid=record.get("parentUuid"),
        timestamp=record.get("timestamp"),
        role=role,
        text_content=extract_text(content),
        is_summarized=bool(record.get("isSummarized", False)),
        raw=record,
    )


def message_to_record(message: Message) -> dict[str, Any]:
    """JSONL record for an output artifact."""
    return {
        "type": message.role,
        "uuid": message.uuid,
        "parentUuid": message.parent_uuid,
        "timestamp": message.timestamp,
        "isSummarized": message.is_summarized,
        "message": {"role": message.role, "content": message.text_content},
    }


def coerce_message(item: Any) -> Message:
    """Accept summarizer output as ``Message``, normalized dict or JSONL record."""
    if isinstance(item, Message):
        return item
    if isinstance(item, dict):
        if "message" in item or "type" in item:
            message = record_to_message(item)
            if message is not None:
                return message
        return Message.model_validate({
            "uuid": item.get("uuid"),
            "parent_uuid": item.get("parentUuid", item.get("parent_uuid")),
            "timestamp": item.get("timestamp"),
            "role": item.get("role", "assistant"),
            "text_content": item.get("textContent", item.get("text_content", extract_text(item.get("content")))),
            "is_summarized": item.get("isSummarized", item.get("is_summarized", False)),
        })
    raise TypeError(f"Unsupported message type: {type(item).__name__}")


class MessageLoader:
    """Reads a session's ordered, deduplicated message sequence from JSONL."""

    async def load(self, path: str | Path) -> list[Message]:
        """Parse ``path``.

        Malformed lines are skipped with a warning; a file where no line
        parses at all is a parse error.

        Raises:
            SourceMissingError: The file does not exist
            SessionParseError: The file is unreadable or entirely malformed
        """
        path = Path(path)
        if not path.is_file():
            raise SourceMissingError(str(path))

        messages: list[Message] = []
        seen: set[str] = set()
        lines = 0
        failures = 0
        try:
            async with aiofiles.open(path, mode="r", encoding="utf-8") as f:
                async for line in f:
                    if not line.strip():
                        continue
                    lines += 1
                    try:
                        record = json.loads(line)
                    except json.JSONDecodeError:
                        failures += 1
                        continue
                    if not isinstance(record, dict):
                        failures += 1
                        continue
                    message = record_to_message(record)
                    if message is None or message.uuid in seen:
                        continue
                    seen.add(message.uuid)
                    messages.append(message)
        except (OSError, UnicodeDecodeError) as e:
            raise SessionParseError(str(path), str(e)) from e

        if lines and failures == lines:
            raise SessionParseError(str(path), "no line is valid JSON")
        if failures:
            logger.warning("Skipped malformed session lines", extra={"path": str(path), "count": failures})
        logger.debug("Session file parsed", extra={"path": str(path), "messages": len(messages)})
        return messages

    async def load_records(self, path: str | Path) -> list[dict[str, Any]]:
        """Raw JSON records, for append-only syncing."""
        path = Path(path)
        if not path.is_file():
            raise SourceMissingError(str(path))
        records = []
        async with aiofiles.open(path, mode="r", encoding="utf-8") as f:
            async for line in f:
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(record, dict):
                    records.append(record)
        return records
