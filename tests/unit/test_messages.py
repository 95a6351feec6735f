"""Unit tests for session log parsing."""

import pytest

from helpers import make_records, write_records
from session_memory.models.message import Message
from session_memory.services.messages import (
    MessageLoader,
    coerce_message,
    extract_text,
    message_to_record,
    record_to_message,
)
from session_memory.utils.errors import SessionParseError, SourceMissingError


class TestRecordConversion:
    """Record to message conversion."""

    def test_extract_text_from_blocks(self):
        """Test block content flattening."""
        content = [
            {"type": "text", "text": "first"},
            {"type": "tool_use", "name": "grep"},
            {"type": "text", "text": "second"},
        ]
        assert extract_text(content) == "first\nsecond"
        assert extract_text(None) == ""
        assert extract_text("plain") == "plain"

    def test_conversation_record(self):
        """Test a log record."""
        message = record_to_message(make_records(1)[0])

        assert message.uuid == "msg-000"
        assert message.role == "user"
        assert message.timestamp == "2026-01-01T12:00:00Z"
        assert message.raw["gitBranch"] == "main"

    def test_non_conversation_records_are_ignored(self):
        """Test summary and snapshot records."""
        assert record_to_message({"type": "summary", "summary": "x", "uuid": "u"}) is None
        assert record_to_message({"type": "user", "message": {"role": "user", "content": "no id"}}) is None

    def test_message_to_record(self):
        """Test the artifact record shape."""
        record = message_to_record(Message(uuid="u", role="assistant", text_content="hi", is_summarized=True))

        assert record["type"] == "assistant"
        assert record["isSummarized"] is True
        assert record["message"] == {"role": "assistant", "content": "hi"}

    def test_coerce_message(self):
        """Test summarizer output shapes."""
        from_dict = coerce_message({"uuid": "u1", "role": "assistant", "textContent": "short"})
        from_record = coerce_message(make_records(1)[0])
        message = Message(uuid="u2")

        assert from_dict.text_content == "short"
        assert from_record.uuid == "msg-000"
        assert coerce_message(message) is message
        with pytest.raises(TypeError):
            coerce_message("text")


class TestMessageLoader:
    """JSONL loading."""

    @pytest.mark.asyncio
    async def test_load(self, temp_root):
        """Test ordered, deduplicated loading."""
        records = make_records(4)
        path = write_records(temp_root / "s.jsonl", records + [records[1]])

        messages = await MessageLoader().load(path)

        assert [m.uuid for m in messages] == ["msg-000", "msg-001", "msg-002", "msg-003"]

    @pytest.mark.asyncio
    async def test_malformed_lines_are_skipped(self, temp_root):
        """Test partial corruption."""
        path = write_records(temp_root / "s.jsonl", make_records(2))
        with open(path, "a", encoding="utf-8") as f:
            f.write("{broken\n")

        messages = await MessageLoader().load(path)

        assert len(messages) == 2

    @pytest.mark.asyncio
    async def test_all_lines_malformed(self, temp_root):
        """Test a file with no valid line."""
        path = temp_root / "s.jsonl"
        path.write_text("nope\nstill nope\n", encoding="utf-8")

        with pytest.raises(SessionParseError):
            await MessageLoader().load(path)

    @pytest.mark.asyncio
    async def test_missing_file(self, temp_root):
        """Test a missing source."""
        with pytest.raises(SourceMissingError):
            await MessageLoader().load(temp_root / "missing.jsonl")

    @pytest.mark.asyncio
    async def test_load_records(self, temp_root):
        """Test raw record loading."""
        path = write_records(temp_root / "s.jsonl", make_records(2) + [{"type": "summary", "summary": "x"}])

        records = await MessageLoader().load_records(path)

        assert len(records) == 3
        assert records[2]["type"] == "summary"
