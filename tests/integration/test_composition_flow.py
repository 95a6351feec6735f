"""Integration tests for composing context from several sessions."""

import asyncio
import json
from pathlib import Path

import pytest
import pytest_asyncio

from helpers import PROJECT, make_records, write_records
from session_memory.utils.errors import (
    ContentError,
    ErrorCode,
    NotFoundError,
    SessionNotFoundError,
    ValidationError,
)


@pytest_asyncio.fixture
async def two_sessions(sessions, orchestrator, source, logs_dir):
    """``s1`` (six messages, one compression) and ``s2`` (four messages, none)."""
    await sessions.register_session(PROJECT, "s1", source)
    record = await orchestrator.create_compression(PROJECT, "s1", None)
    await sessions.register_session(PROJECT, "s2", write_records(logs_dir / "s2.jsonl", make_records(4)))
    return record


def sprint_request(version_id, **overrides):
    request = {
        "name": "Sprint Context",
        "components": [
            {"sessionId": "s1", "versionId": version_id},
            {"sessionId": "s2", "versionId": "original"},
        ],
        "totalTokenBudget": 2000,
    }
    request.update(overrides)
    return request


def ctx_request(session_id):
    return {
        "name": "Ctx",
        "components": [{"sessionId": session_id, "versionId": "original"}],
        "totalTokenBudget": 2000,
    }


class TestCompose:
    """Building compositions."""

    @pytest.mark.asyncio
    async def test_explicit_versions(self, engine, two_sessions, store):
        """Test a composition of a compression and an original."""
        record = await engine.compose(PROJECT, sprint_request(two_sessions.version_id))

        assert [c.version_id for c in record.components] == [two_sessions.version_id, "original"]
        assert [c.order for c in record.components] == [0, 1]
        assert [c.token_contribution for c in record.components] == [two_sessions.output_tokens, 56]
        assert record.actual_tokens == two_sessions.output_tokens + 56
        assert record.total_messages == two_sessions.output_messages + 4
        assert [c.allocated_budget for c in record.components] == [950, 950]

        out_dir = Path(record.output_files["metadata"].path).parent
        assert out_dir.name == "sprint-context"
        markdown = Path(record.output_files["md"].path).read_text(encoding="utf-8")
        assert "# Composed Context: Sprint Context" in markdown
        assert "## Provenance" in markdown

        lines = Path(record.output_files["jsonl"].path).read_text(encoding="utf-8").splitlines()
        header = json.loads(lines[0])
        assert header["type"] == "composition-metadata"
        assert header["totalTokens"] == record.actual_tokens
        assert [entry["versionId"] for entry in header["lineage"]] == [two_sessions.version_id, "original"]
        boundaries = [json.loads(line) for line in lines if '"session-boundary"' in line]
        assert [b["sessionId"] for b in boundaries] == ["s1", "s2"]

        stored = await store.get_composition(PROJECT, record.composition_id)
        assert stored.name == "Sprint Context"

    @pytest.mark.asyncio
    async def test_duplicate_name_gets_suffix(self, engine, two_sessions):
        """Test that a second composition never overwrites the first one's files."""
        first = await engine.compose(PROJECT, sprint_request("original"))
        second = await engine.compose(PROJECT, sprint_request("original"))

        first_dir = Path(first.output_files["metadata"].path).parent
        second_dir = Path(second.output_files["metadata"].path).parent
        assert first_dir.name == "sprint-context"
        assert second_dir.name == f"sprint-context-{second.composition_id[:8]}"
        assert first_dir.exists()

    @pytest.mark.asyncio
    async def test_concurrent_same_name_gets_separate_dirs(self, engine, two_sessions):
        """Test that concurrent compositions with one name never share an output directory."""
        first, second = await asyncio.gather(
            engine.compose(PROJECT, ctx_request("s1")),
            engine.compose(PROJECT, ctx_request("s2")),
        )

        first_dir = Path(first.output_files["metadata"].path).parent
        second_dir = Path(second.output_files["metadata"].path).parent
        assert first_dir != second_dir
        assert sorted([first_dir.name, second_dir.name]) == sorted(
            ["ctx", f"ctx-{(second if first_dir.name == 'ctx' else first).composition_id[:8]}"]
        )

        await engine.delete(PROJECT, first.composition_id)
        assert Path(second.output_files["jsonl"].path).exists()
        lines = Path(second.output_files["jsonl"].path).read_text(encoding="utf-8").splitlines()
        assert [json.loads(line)["sessionId"] for line in lines if '"session-boundary"' in line] == ["s2"]

    @pytest.mark.asyncio
    async def test_single_format(self, engine, two_sessions):
        """Test that only the requested format is written."""
        record = await engine.compose(PROJECT, sprint_request("original", outputFormat="md"))

        assert set(record.output_files) == {"md", "metadata"}

    @pytest.mark.asyncio
    async def test_auto_prefers_fitting_original(self, engine, two_sessions):
        """Test that auto selection keeps a small session uncompressed."""
        record = await engine.compose(PROJECT, {
            "name": "auto",
            "components": [{"sessionId": "s2"}],
            "totalTokenBudget": 1000,
        })

        assert record.components[0].version_id == "original"
        assert record.components[0].token_contribution == 56

    @pytest.mark.asyncio
    async def test_auto_uses_parts_after_delta(self, engine, sessions, orchestrator, two_sessions, source):
        """Test that a multi-part session is assembled part by part."""
        write_records(source, make_records(4, start=6), mode="a")
        await sessions.sync_new_messages(PROJECT, "s1")
        second = await orchestrator.create_compression(PROJECT, "s1", None, delta_only=True)

        record = await engine.compose(PROJECT, {
            "name": "parts",
            "components": [{"sessionId": "s1", "versionId": "auto"}],
            "totalTokenBudget": 1000,
        })

        component = record.components[0]
        assert component.version_id == "auto-parts"
        assert [p.part_number for p in component.selected_parts] == [1, 2]
        assert [p.version_id for p in component.selected_parts] == [two_sessions.version_id, second.version_id]
        assert component.token_contribution == two_sessions.output_tokens + second.output_tokens

    @pytest.mark.asyncio
    async def test_new_compression_required(self, engine, sessions, logs_dir):
        """Test that an oversized session without versions is refused."""
        path = write_records(logs_dir / "big.jsonl", make_records(6, words=200))
        await sessions.register_session(PROJECT, "big", path)

        with pytest.raises(ContentError) as exc_info:
            await engine.compose(PROJECT, {
                "name": "big",
                "components": [{"sessionId": "big"}],
                "totalTokenBudget": 1000,
            })
        assert exc_info.value.code == ErrorCode.NEW_COMPRESSION_REQUIRED
        assert exc_info.value.details["required_ratio"] == 2

    @pytest.mark.asyncio
    async def test_new_compression_on_the_fly(self, engine_with_compression, sessions, summarizer, logs_dir, store):
        """Test that an allowed on-the-fly compression is created and used."""
        path = write_records(logs_dir / "big.jsonl", make_records(6, words=200))
        await sessions.register_session(PROJECT, "big", path)

        record = await engine_with_compression.compose(PROJECT, {
            "name": "big",
            "components": [{"sessionId": "big"}],
            "totalTokenBudget": 1000,
            "allowNewCompressions": True,
        })

        assert record.components[0].version_id == "part1_v001"
        settings = summarizer.summarize.await_args.args[1]
        assert settings.session_distance == 1
        assert settings.preset_label == "gentle"
        session = await store.get_session(PROJECT, "big")
        assert [c.version_id for c in session.compressions] == ["part1_v001"]


class TestComposeValidation:
    """Requests refused before any work."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("request_data,code", [
        ({"name": " ", "components": [{"sessionId": "s1"}], "totalTokenBudget": 2000}, ErrorCode.INVALID_NAME),
        ({"name": "x", "components": [], "totalTokenBudget": 2000}, ErrorCode.NO_COMPONENTS),
        ({"name": "x", "components": [{"sessionId": "s1"}], "totalTokenBudget": 10}, ErrorCode.INVALID_BUDGET),
    ])
    async def test_invalid_requests(self, engine, two_sessions, request_data, code):
        """Test request validation codes."""
        with pytest.raises(ValidationError) as exc_info:
            await engine.compose(PROJECT, request_data)
        assert exc_info.value.code == code

    @pytest.mark.asyncio
    async def test_unknown_session(self, engine, two_sessions):
        """Test a component naming an unregistered session."""
        with pytest.raises(SessionNotFoundError) as exc_info:
            await engine.compose(PROJECT, {
                "name": "x",
                "components": [{"sessionId": "ghost"}],
                "totalTokenBudget": 2000,
            })
        assert exc_info.value.code == ErrorCode.SESSION_NOT_FOUND

    @pytest.mark.asyncio
    async def test_unknown_version(self, engine, two_sessions):
        """Test a component naming a missing version."""
        with pytest.raises(NotFoundError) as exc_info:
            await engine.compose(PROJECT, sprint_request("part7_v001"))
        assert exc_info.value.code == ErrorCode.VERSION_NOT_FOUND

    @pytest.mark.asyncio
    async def test_unknown_strategy(self, engine, two_sessions):
        """Test an unknown allocation strategy."""
        with pytest.raises(ValidationError):
            await engine.compose(PROJECT, sprint_request("original", allocationStrategy="fibonacci"))


class TestPreview:
    """Dry runs."""

    @pytest.mark.asyncio
    async def test_preview_missing_session(self, engine, two_sessions):
        """Test that missing sessions make the preview invalid instead of raising."""
        preview = await engine.preview(PROJECT, {
            "name": "x",
            "components": [{"sessionId": "ghost"}],
            "totalTokenBudget": 2000,
        })

        assert preview["valid"] is False
        assert preview["missing_sessions"] == ["ghost"]

    @pytest.mark.asyncio
    async def test_preview_counts_new_compressions(self, engine, sessions, two_sessions, logs_dir, paths):
        """Test the preview of a mixed request."""
        path = write_records(logs_dir / "big.jsonl", make_records(6, words=200))
        await sessions.register_session(PROJECT, "big", path)

        preview = await engine.preview(PROJECT, {
            "name": "x",
            "components": [{"sessionId": "s2"}, {"sessionId": "big"}],
            "totalTokenBudget": 1000,
        })

        assert preview["valid"] is True
        assert preview["new_compressions_needed"] == 1
        first, second = preview["components"]
        assert first["selected_version"]["version_id"] == "original"
        assert first["selected_version"]["fits_in_budget"] is True
        assert second["selected_version"]["action"] == "create-new"
        assert second["allocated_budget"] == 450
        assert not paths.composed_dir(PROJECT, "x").exists()


class TestStoredCompositions:
    """Listing, reading, usage tracking and deletion."""

    @pytest.mark.asyncio
    async def test_lifecycle(self, engine, two_sessions, store):
        """Test everything after a composition exists."""
        older = await engine.compose(PROJECT, sprint_request("original", name="Older"))
        newer = await engine.compose(PROJECT, sprint_request("original", name="Newer"))

        listed = await engine.list(PROJECT)
        assert [c.composition_id for c in listed] == [newer.composition_id, older.composition_id]

        assert await engine.record_usage(PROJECT, newer.composition_id, "s9") is True
        revision = (await store.load(PROJECT)).revision
        assert await engine.record_usage(PROJECT, newer.composition_id, "s9") is False
        assert (await store.load(PROJECT)).revision == revision
        stored = await engine.get(PROJECT, newer.composition_id)
        assert stored.used_in_sessions == ["s9"]
        assert stored.last_used is not None

        content = await engine.get_content(PROJECT, newer.composition_id, "jsonl")
        assert content["content_type"] == "application/x-ndjson"
        assert content["filename"] == "newer.jsonl"
        assert content["content"].startswith('{"type": "composition-metadata"')

        with pytest.raises(ValidationError) as exc_info:
            await engine.get_content(PROJECT, newer.composition_id, "pdf")
        assert exc_info.value.code == ErrorCode.INVALID_FORMAT

        result = await engine.delete(PROJECT, older.composition_id)
        assert result["deleted"] is True
        assert len(result["files_deleted"]) == 3
        assert not Path(older.output_files["md"].path).exists()
        with pytest.raises(NotFoundError) as exc_info:
            await engine.get(PROJECT, older.composition_id)
        assert exc_info.value.code == ErrorCode.COMPOSITION_NOT_FOUND

    @pytest.mark.asyncio
    async def test_usage_of_unknown_composition(self, engine, two_sessions):
        """Test that usage cannot be recorded for a missing composition."""
        with pytest.raises(NotFoundError) as exc_info:
            await engine.record_usage(PROJECT, "missing", "s1")
        assert exc_info.value.code == ErrorCode.COMPOSITION_NOT_FOUND
