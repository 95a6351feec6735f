"""Integration tests for compression: parts, deltas, re-compression, locking and failures."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from helpers import PROJECT, make_records, shorten, write_records
from session_memory.models.settings import CompressionLevel
from session_memory.services.locks import SessionLockRegistry
from session_memory.services.orchestrator import CompressionOrchestrator
from session_memory.utils.errors import (
    CompressionFailedError,
    CompressionInProgressError,
    ErrorCode,
    InsufficientMessagesError,
    InvalidSettingsError,
    NoDeltaError,
    NotFoundError,
    ValidationError,
    VersionExistsError,
)


class TestIncrementalCompression:
    """Delta parts over an append-only session."""

    @pytest.mark.asyncio
    async def test_parts_and_recompression(self, sessions, orchestrator, summarizer, source, store, paths):
        """Test the full incremental lifecycle of a session."""
        await sessions.register_session(PROJECT, "s1", source)

        # Part 1 covers the whole session so far
        first = await orchestrator.create_compression(PROJECT, "s1", None, delta_only=True)
        assert first.version_id == "part1_v001"
        assert first.part_number == 1
        assert first.compression_level == CompressionLevel.MODERATE
        assert not first.is_full_session
        assert (first.message_range.start_index, first.message_range.end_index) == (0, 6)
        assert first.input_messages == 6
        assert first.output_messages == 3
        assert first.output_tokens < first.input_tokens
        summaries = paths.summaries_dir(PROJECT, "s1")
        assert (summaries / f"{first.file}.md").exists()
        assert (summaries / f"{first.file}.jsonl").exists()

        with pytest.raises(NoDeltaError):
            await orchestrator.create_compression(PROJECT, "s1", None, delta_only=True)

        # New messages arrive and are synced
        write_records(source, make_records(4, start=6), mode="a")
        await sessions.sync_new_messages(PROJECT, "s1")
        status = await orchestrator.delta_status(PROJECT, "s1")
        assert status["has_delta"] is True
        assert status["delta_message_count"] == 4
        assert status["next_part_number"] == 2

        second = await orchestrator.create_compression(PROJECT, "s1", None, delta_only=True)
        assert second.version_id == "part2_v001"
        assert (second.message_range.start_index, second.message_range.end_index) == (6, 10)
        compressed = summarizer.summarize.await_args.args[0]
        assert [m.uuid for m in compressed] == ["msg-006", "msg-007", "msg-008", "msg-009"]

        # Same level again is refused, a lighter level is a new version of the same slice
        with pytest.raises(VersionExistsError):
            await orchestrator.recompress_part(PROJECT, "s1", 1, None)
        lighter = await orchestrator.recompress_part(PROJECT, "s1", 1, {"tierPreset": "gentle"})
        assert lighter.version_id == "part1_v002"
        assert lighter.compression_level == CompressionLevel.LIGHT
        assert lighter.message_range.same_slice(first.message_range)

        session = await store.get_session(PROJECT, "s1")
        assert [c.version_id for c in session.compressions] == ["part1_v001", "part2_v001", "part1_v002"]
        assert (await orchestrator.delta_status(PROJECT, "s1"))["has_delta"] is False

    @pytest.mark.asyncio
    async def test_unknown_part(self, sessions, orchestrator, source):
        """Test re-compressing a part that does not exist."""
        await sessions.register_session(PROJECT, "s1", source)
        await orchestrator.create_compression(PROJECT, "s1", None, delta_only=True)

        with pytest.raises(NotFoundError) as exc_info:
            await orchestrator.recompress_part(PROJECT, "s1", 3, {"tierPreset": "gentle"})
        assert exc_info.value.code == ErrorCode.PART_NOT_FOUND

    @pytest.mark.asyncio
    async def test_single_new_message_is_not_enough(self, sessions, orchestrator, source):
        """Test the two-message minimum for a delta."""
        await sessions.register_session(PROJECT, "s1", source)
        await orchestrator.create_compression(PROJECT, "s1", None, delta_only=True)
        write_records(source, make_records(1, start=6), mode="a")
        await sessions.sync_new_messages(PROJECT, "s1")

        with pytest.raises(InsufficientMessagesError):
            await orchestrator.create_compression(PROJECT, "s1", None, delta_only=True)


class TestFullSessionCompression:
    """Whole-session versions."""

    @pytest.mark.asyncio
    async def test_full_session_is_part_one(self, sessions, orchestrator, source):
        """Test that a full compression is marked as such."""
        await sessions.register_session(PROJECT, "s1", source)

        record = await orchestrator.create_compression(
            PROJECT, "s1", {"mode": "uniform", "compactionRatio": 5, "aggressiveness": "aggressive"}
        )

        assert record.version_id == "part1_v001"
        assert record.is_full_session
        assert record.compression_level == CompressionLevel.AGGRESSIVE
        assert record.file == "part1_v001_uniform-aggressive_1k"

    @pytest.mark.asyncio
    async def test_full_session_cannot_redefine_part_one(self, sessions, orchestrator, source):
        """Test that part 1 keeps its slice after the session grew."""
        await sessions.register_session(PROJECT, "s1", source)
        await orchestrator.create_compression(PROJECT, "s1", None)
        write_records(source, make_records(4, start=6), mode="a")
        await sessions.sync_new_messages(PROJECT, "s1")

        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.create_compression(PROJECT, "s1", {"tierPreset": "gentle"})
        assert exc_info.value.code == ErrorCode.INVALID_PART

    @pytest.mark.asyncio
    async def test_too_few_messages(self, sessions, orchestrator, logs_dir):
        """Test a one-message session."""
        path = write_records(logs_dir / "tiny.jsonl", make_records(1))
        await sessions.register_session(PROJECT, "tiny", path)

        with pytest.raises(InsufficientMessagesError):
            await orchestrator.create_compression(PROJECT, "tiny", None)

    @pytest.mark.asyncio
    async def test_invalid_settings_before_any_work(self, sessions, orchestrator, summarizer, source, locks):
        """Test that bad settings are rejected up front."""
        await sessions.register_session(PROJECT, "s1", source)

        with pytest.raises(InvalidSettingsError):
            await orchestrator.create_compression(PROJECT, "s1", {"mode": "uniform", "compactionRatio": 100})

        summarizer.summarize.assert_not_awaited()
        assert not locks.is_locked(PROJECT, "s1")


class TestKeepMarkersDuringCompression:
    """Decay decisions recorded on versions and markers."""

    @pytest.mark.asyncio
    async def test_decay_outcomes(self, sessions, orchestrator, store, logs_dir):
        """Test survival statistics and marker history."""
        texts = ["##keepit1.00##keep audit", "ok", "##keepit0.10##tabs please", "sure"]
        path = write_records(logs_dir / "s1.jsonl", make_records(4, texts=texts))
        await sessions.register_session(PROJECT, "s1", path)

        record = await orchestrator.create_compression(
            PROJECT, "s1", {"keepitMode": "decay", "sessionDistance": 5}
        )

        assert record.keepit_stats.preserved == 1
        assert record.keepit_stats.summarized == 1
        assert record.keepit_stats.unverified == 0
        session = await store.get_session(PROJECT, "s1")
        by_content = {m.content: m for m in session.keepit_markers}
        assert by_content["keep audit"].survived_in == [record.version_id]
        assert by_content["tabs please"].summarized_in == [record.version_id]

    @pytest.mark.asyncio
    async def test_ignore_mode_records_nothing(self, sessions, orchestrator, logs_dir):
        """Test the default keep mode."""
        path = write_records(logs_dir / "s1.jsonl", make_records(2, texts=["##keepit0.90##x marks", "ok"]))
        await sessions.register_session(PROJECT, "s1", path)

        record = await orchestrator.create_compression(PROJECT, "s1", None)

        assert record.keepit_stats.total == 0


class TestLockingAndFailures:
    """Concurrency and collaborator failures."""

    @pytest.mark.asyncio
    async def test_concurrent_compression_fails_fast(self, sessions, orchestrator, summarizer, source, locks):
        """Test that a second compression of the same session is refused while one runs."""
        await sessions.register_session(PROJECT, "s1", source)
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow(messages, settings):
            started.set()
            await release.wait()
            return await shorten(messages, settings)

        summarizer.summarize = AsyncMock(side_effect=slow)
        running = asyncio.create_task(orchestrator.create_compression(PROJECT, "s1", None))
        await started.wait()

        with pytest.raises(CompressionInProgressError):
            await orchestrator.create_compression(PROJECT, "s1", {"tierPreset": "gentle"})
        assert locks.is_locked(PROJECT, "s1", "compression")

        release.set()
        record = await running

        assert record.version_id == "part1_v001"
        assert not locks.is_locked(PROJECT, "s1")
        retried = await orchestrator.create_compression(PROJECT, "s1", {"tierPreset": "gentle"})
        assert retried.version_id == "part1_v002"

    @pytest.mark.asyncio
    async def test_summarizer_failure_leaves_nothing(self, sessions, orchestrator, summarizer, source, store, locks, paths):
        """Test that a failed summarizer call leaves no record, no artifacts and no lock."""
        await sessions.register_session(PROJECT, "s1", source)
        summarizer.summarize = AsyncMock(side_effect=RuntimeError("model overloaded"))

        with pytest.raises(CompressionFailedError) as exc_info:
            await orchestrator.create_compression(PROJECT, "s1", None)

        assert "model overloaded" in exc_info.value.message
        assert (await store.get_session(PROJECT, "s1")).compressions == []
        summaries = paths.summaries_dir(PROJECT, "s1")
        assert not summaries.exists() or not any(summaries.iterdir())
        assert not locks.is_locked(PROJECT, "s1")

    @pytest.mark.asyncio
    async def test_failed_commit_removes_artifacts(self, sessions, orchestrator, source, store, paths):
        """Test cleanup when the manifest commit fails."""
        await sessions.register_session(PROJECT, "s1", source)

        async def drop_session(messages, settings):
            await sessions.unregister_session(PROJECT, "s1")
            return await shorten(messages, settings)

        orchestrator.summarizer.summarize = AsyncMock(side_effect=drop_session)

        with pytest.raises(NotFoundError):
            await orchestrator.create_compression(PROJECT, "s1", None)

        summaries = paths.summaries_dir(PROJECT, "s1")
        assert not summaries.exists() or not any(summaries.iterdir())

    @pytest.mark.asyncio
    async def test_stale_lock_takeover_keeps_committed_artifacts(
        self, sessions, summarizer, source, store, counter, artifacts, paths
    ):
        """Test that a writer that took over a stale lock cannot replace committed artifacts."""
        await sessions.register_session(PROJECT, "s1", source)
        orchestrator = CompressionOrchestrator(
            summarizer,
            store=store,
            locks=SessionLockRegistry(stale_after_seconds=-1.0),
            token_counter=counter,
            artifacts=artifacts,
        )
        entered = 0
        both_running = asyncio.Event()

        async def gated(messages, settings):
            nonlocal entered
            entered += 1
            if entered == 2:
                both_running.set()
            await both_running.wait()
            return await shorten(messages, settings)

        summarizer.summarize = AsyncMock(side_effect=gated)
        results = await asyncio.gather(
            orchestrator.create_compression(PROJECT, "s1", None),
            orchestrator.create_compression(PROJECT, "s1", None),
            return_exceptions=True,
        )

        records = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(records) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], VersionExistsError)

        session = await store.get_session(PROJECT, "s1")
        assert [c.version_id for c in session.compressions] == ["part1_v001"]
        summaries = paths.summaries_dir(PROJECT, "s1")
        committed = session.compressions[0].file
        assert (summaries / f"{committed}.md").exists()
        assert (summaries / f"{committed}.jsonl").exists()
        assert not [p for p in summaries.iterdir() if p.name.endswith(".tmp")]

    @pytest.mark.asyncio
    async def test_existing_artifact_is_never_replaced(self, artifacts, paths):
        """Test that writing a version over existing artifacts is refused."""
        summaries = paths.summaries_dir(PROJECT, "s1")
        summaries.mkdir(parents=True)
        (summaries / "part1_v001_tiered-standard_1k.jsonl").write_text("kept\n", encoding="utf-8")

        with pytest.raises(FileExistsError):
            await artifacts.write_version(PROJECT, "s1", "part1_v001_tiered-standard_1k", [], metadata={})

        assert (summaries / "part1_v001_tiered-standard_1k.jsonl").read_text(encoding="utf-8") == "kept\n"
        # The markdown half written by the refused call is gone again
        assert not (summaries / "part1_v001_tiered-standard_1k.md").exists()
