"""Unit tests for version scoring, selection and budget allocation."""

from datetime import datetime, timedelta, timezone

import pytest

from session_memory.models.manifest import CompressionRecord, KeepitStats, MessageRange, SessionRecord
from session_memory.models.settings import CompressionLevel, TieredSettings
from session_memory.services.composition import (
    BudgetShare,
    Candidate,
    SelectionCriteria,
    allocate_token_budget,
    check_parts_fit_budget,
    find_best_fitting_version,
    parse_request,
    preset_for_ratio,
    required_ratio,
    sanitize_name,
    score_version,
    select_best_version,
    select_best_versions_for_parts,
    session_part_info,
    suggest_allocation,
)
from session_memory.utils.errors import ValidationError

NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)


def candidate(tokens, ratio=5.0, stats=None, created_at=None):
    return Candidate(
        version_id="v",
        output_tokens=tokens,
        output_messages=10,
        compression_ratio=ratio,
        keepit_stats=stats,
        created_at=created_at,
    )


def record(version_id, tokens, part_number=1, level=CompressionLevel.MODERATE, start=0, end=10):
    return CompressionRecord(
        version_id=version_id,
        file=f"{version_id}_tiered-standard_1k",
        created_at="2026-01-01T12:00:00Z",
        settings=TieredSettings(),
        output_tokens=tokens,
        output_messages=5,
        compression_ratio=round(5000 / tokens, 2),
        part_number=part_number,
        compression_level=level,
        message_range=MessageRange(start_index=start, end_index=end, message_count=end - start),
    )


def session(original_tokens=5000, compressions=()):
    return SessionRecord(
        session_id="s1",
        original_file="/logs/s1.jsonl",
        original_tokens=original_tokens,
        original_messages=20,
        compressions=list(compressions),
    )


class TestScoreVersion:
    """Multiplicative scoring."""

    def test_budget_utilization(self):
        """Test the utilization factor."""
        assert score_version(candidate(500), SelectionCriteria(max_tokens=1000)) == 0.75
        assert score_version(candidate(1000), SelectionCriteria(max_tokens=1000)) == 1.0

    def test_over_budget_penalty(self):
        """Test the over-budget factor."""
        assert score_version(candidate(1500), SelectionCriteria(max_tokens=1000)) == pytest.approx(0.1)

    def test_preferred_ratio(self):
        """Test the ratio factor and its floor."""
        criteria = SelectionCriteria(preferred_ratio=10)

        assert score_version(candidate(100, ratio=10), criteria) == 1.0
        assert score_version(candidate(100, ratio=20), criteria) == pytest.approx(0.8)
        assert score_version(candidate(100, ratio=45), criteria) == 0.5

    def test_keepit_preservation(self):
        """Test that better preservation scores higher."""
        criteria = SelectionCriteria(preserve_keepits=True)
        half = candidate(100, stats=KeepitStats(preserved=1, summarized=1))
        full = candidate(100, stats=KeepitStats(preserved=2, summarized=0))
        none = candidate(100, stats=KeepitStats())

        assert score_version(half, criteria) == 0.75
        assert score_version(full, criteria) > score_version(half, criteria)
        assert score_version(none, criteria) == 1.0

    def test_recency(self):
        """Test the recency factor and its floor."""
        criteria = SelectionCriteria(prefer_recent=True)
        recent = candidate(100, created_at=(NOW - timedelta(days=15)).isoformat())
        old = candidate(100, created_at=(NOW - timedelta(days=150)).isoformat())

        assert score_version(recent, criteria, now=NOW) == pytest.approx(0.95)
        assert score_version(old, criteria, now=NOW) == pytest.approx(0.9)

    def test_scores_stay_in_unit_interval(self):
        """Test the (0, 1] range."""
        criteria = SelectionCriteria(max_tokens=100, preferred_ratio=2, preserve_keepits=True, prefer_recent=True)
        worst = candidate(5000, ratio=50, stats=KeepitStats(summarized=3), created_at="2000-01-01T00:00:00Z")

        assert 0 < score_version(worst, criteria, now=NOW) <= 1


class TestSelectBestVersion:
    """Single-part selection."""

    def test_original_excluded_when_over_budget(self):
        """Test that the original only competes when it fits."""
        current = session(5000, [record("part1_v001", 800), record("part1_v002", 2000)])
        best = select_best_version(current, SelectionCriteria(max_tokens=1000))

        assert best.version_id == "part1_v001"

    def test_original_selected_when_it_fits(self):
        """Test the original winning a large budget."""
        current = session(5000, [record("part1_v001", 800), record("part1_v002", 2000)])
        best = select_best_version(current, SelectionCriteria(max_tokens=10000))

        assert best.is_original
        assert best.version_id == "original"

    def test_nothing_acceptable(self):
        """Test that a new compression is signalled with None."""
        current = session(5000, [record("part1_v001", 2000)])

        assert select_best_version(current, SelectionCriteria(max_tokens=1000)) is None

    def test_find_best_fitting_version(self):
        """Test the largest version within budget."""
        current = session(5000, [record("part1_v001", 800), record("part1_v002", 400)])

        assert find_best_fitting_version(current, 900).version_id == "part1_v001"
        assert find_best_fitting_version(current, 6000).is_original
        assert find_best_fitting_version(current, 100) is None


class TestSelectBestVersionsForParts:
    """Per-part selection."""

    def test_one_version_per_part(self):
        """Test equal per-part budgets and the smallest-version fallback."""
        current = session(5000, [
            record("part1_v001", 450, 1, CompressionLevel.LIGHT),
            record("part1_v002", 200, 1, CompressionLevel.AGGRESSIVE),
            record("part2_v001", 900, 2, start=10, end=20),
        ])
        selected = select_best_versions_for_parts(current, SelectionCriteria(max_tokens=1000))

        assert [p.part_number for p in selected] == [1, 2]
        assert [p.version_id for p in selected] == ["part1_v001", "part2_v001"]
        assert selected[1].message_range.start_index == 10

        fit = check_parts_fit_budget(selected, 1000)
        assert fit["total_tokens"] == 1350
        assert not fit["fits_within_budget"]
        assert fit["overage_tokens"] == 350

    def test_session_without_parts(self):
        """Test the original as part 1."""
        selected = select_best_versions_for_parts(session(5000), SelectionCriteria(max_tokens=1000))

        assert len(selected) == 1
        assert selected[0].is_original
        assert selected[0].part_number == 1
        assert selected[0].message_range.end_index == 20

    def test_session_part_info(self):
        """Test the part summary."""
        current = session(5000, [
            record("part1_v001", 450, 1, CompressionLevel.LIGHT),
            record("part1_v002", 200, 1, CompressionLevel.AGGRESSIVE),
        ])
        info = session_part_info(current)

        assert info["part_count"] == 1
        assert info["parts"][0]["version_count"] == 2
        assert info["total_compressed_tokens"] == 200


class TestAllocateTokenBudget:
    """Budget strategies."""

    def setup_method(self):
        """Set up test fixtures."""
        self.shares = [
            BudgetShare(session_id="a", original_tokens=1000, weight=1),
            BudgetShare(session_id="b", original_tokens=3000, weight=3),
        ]

    def test_equal(self):
        """Test equal shares after overhead."""
        assert allocate_token_budget(self.shares, 1100, "equal", 50) == [500, 500]

    def test_proportional(self):
        """Test shares proportional to original size."""
        assert allocate_token_budget(self.shares, 1100, "proportional", 50) == [250, 750]

    def test_recency(self):
        """Test later components getting more."""
        assert allocate_token_budget(self.shares, 1100, "recency", 50) == [333, 666]

    def test_inverse_recency(self):
        """Test earlier components getting more."""
        assert allocate_token_budget(self.shares, 1100, "inverse-recency", 50) == [666, 333]

    def test_custom(self):
        """Test shares by weight."""
        assert allocate_token_budget(self.shares, 1100, "custom", 50) == [250, 750]

    def test_never_exceeds_available(self):
        """Test flooring."""
        shares = [BudgetShare(session_id=str(i)) for i in range(3)]
        allocations = allocate_token_budget(shares, 1000, "equal", 0)

        assert allocations == [333, 333, 333]
        assert sum(allocations) <= 1000

    def test_default_overhead_from_config(self):
        """Test the configured overhead."""
        assert allocate_token_budget(self.shares, 1100) == [500, 500]

    def test_unknown_strategy(self):
        """Test strategy validation."""
        with pytest.raises(ValidationError):
            allocate_token_budget(self.shares, 1100, "random")

    def test_suggest_allocation(self):
        """Test strategy suggestion for uneven sessions."""
        shares = [BudgetShare(session_id="a", original_tokens=1000), BudgetShare(session_id="b", original_tokens=5000)]
        suggestion = suggest_allocation(shares, 2100)

        assert suggestion["strategy"] == "proportional"
        assert suggestion["allocations"] == [333, 1666]
        assert suggestion["per_session_budgets"][1]["compression_required"] is True


class TestHelpers:
    """Names, ratios and request parsing."""

    def test_sanitize_name(self):
        """Test directory-safe names."""
        assert sanitize_name("My Context: v2!") == "my-context-v2"
        assert len(sanitize_name("x" * 100)) == 64

    def test_required_ratio(self):
        """Test clamping to 2..50."""
        assert required_ratio(10000, 1000) == 10
        assert required_ratio(100, 1000) == 2
        assert required_ratio(1_000_000, 1000) == 50

    def test_preset_for_ratio(self):
        """Test preset tiers."""
        assert preset_for_ratio(25) == "aggressive"
        assert preset_for_ratio(15) == "standard"
        assert preset_for_ratio(10) == "gentle"

    def test_parse_request_camel_case(self):
        """Test request parsing."""
        request = parse_request({
            "name": "ctx",
            "totalTokenBudget": 5000,
            "components": [{"sessionId": "s1", "versionId": "original"}],
        })

        assert request.total_token_budget == 5000
        assert request.components[0].session_id == "s1"
        assert request.output_format == "both"

    def test_parse_request_invalid(self):
        """Test a bad output format."""
        with pytest.raises(ValidationError):
            parse_request({"name": "ctx", "outputFormat": "pdf"})
