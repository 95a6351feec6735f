"""Conversation message record consumed by the core."""

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field


class Message(BaseModel):
    """One message of a session, already assembled by the parsing layer."""

    uuid: str = Field(..., description="Stable message identifier")
    parent_uuid: str | None = Field(default=None, description="Threading link to the previous message")
    timestamp: str | None = Field(default=None, description="ISO-8601 timestamp")
    role: Literal["user", "assistant", "system"] = Field(default="user", description="Speaker")
    text_content: str = Field(default="", description="Plain text of the message")
    is_summarized: bool = Field(default=False, description="Produced by the summarizer")
    raw: dict[str, Any] | None = Field(default=None, exclude=True, description="Source record, if any")

    model_config = {
        "extra": "ignore",
    }

    @property
    def parsed_timestamp(self) -> datetime | None:
        return parse_timestamp(self.timestamp)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def timestamp_sort_key(message: Message) -> datetime:
    """Sort key for ascending time order; messages without a timestamp sort first."""
    return message.parsed_timestamp or _EPOCH


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
