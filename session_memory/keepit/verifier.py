"""Check that keep markers decided to survive actually appear in compressed text.

Summarizers reformat text, so containment is checked after whitespace and
case normalization, then with a fuzzy best-window comparison
(``difflib.SequenceMatcher``) over word windows of the compressed text.
"""

import re
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import Any, Iterable

from ..utils.logger import get_logger
from .decay import DecayDecision

logger = get_logger(__name__)

DEFAULT_MIN_SIMILARITY = 0.7
WARN_SIMILARITY = 0.9

_WHITESPACE = re.compile(r"\s+")


def normalize_for_comparison(text: str) -> str:
    return _WHITESPACE.sub(" ", (text or "").lower()).strip()


@dataclass
class MatchResult:
    found: bool
    similarity: float
    match_type: str | None = None
    matched_text: str | None = None


def find_partial_match(needle: str, haystack: str, min_similarity: float = DEFAULT_MIN_SIMILARITY) -> MatchResult:
    """Best match of ``needle`` inside ``haystack``.

    Windows span the needle's word count and one and a half times it, so a
    slightly expanded rephrasing still lines up.
    """
    target = normalize_for_comparison(needle)
    text = normalize_for_comparison(haystack)
    if not target or not text:
        return MatchResult(found=False, similarity=0.0)

    if target in text:
        return MatchResult(found=True, similarity=1.0, match_type="exact", matched_text=needle)

    words = text.split(" ")
    size = len(target.split(" "))
    best_similarity = 0.0
    best_window = None
    for window_size in {size, max(size + 1, int(size * 1.5))}:
        if window_size > len(words):
            window_size = len(words)
        for start in range(0, len(words) - window_size + 1):
            window = " ".join(words[start:start + window_size])
            similarity = SequenceMatcher(None, target, window).ratio()
            if similarity > best_similarity:
                best_similarity = similarity
                best_window = window

    if best_similarity >= min_similarity:
        return MatchResult(
            found=True,
            similarity=round(best_similarity, 3),
            match_type="fuzzy",
            matched_text=best_window,
        )
    return MatchResult(found=False, similarity=round(best_similarity, 3))


@dataclass
class VerificationResult:
    preserved: list[dict] = field(default_factory=list)
    modified: list[dict] = field(default_factory=list)
    missing: list[dict] = field(default_factory=list)

    @property
    def checked(self) -> int:
        return len(self.preserved) + len(self.modified) + len(self.missing)

    @property
    def passed(self) -> bool:
        return not self.missing

    def summary(self) -> dict[str, Any]:
        return {
            "total_checked": self.checked,
            "fully_preserved": len(self.preserved),
            "slightly_modified": len(self.modified),
            "missing": len(self.missing),
            "verification_passed": self.passed,
        }


def verify_preservation(
    markers: Iterable[Any],
    compressed_text: str,
    decisions: Iterable[DecayDecision],
    min_similarity: float = DEFAULT_MIN_SIMILARITY,
) -> VerificationResult:
    """Look up every surviving marker in ``compressed_text``.

    Markers decided to be summarized are not checked. Missing markers are
    logged as warnings.
    """
    surviving = {d.marker_id for d in decisions if d.survives}
    result = VerificationResult()

    for marker in markers:
        if marker.marker_id not in surviving:
            continue
        match = find_partial_match(marker.content, compressed_text, min_similarity)
        entry = {
            "marker_id": marker.marker_id,
            "weight": marker.weight,
            "similarity": match.similarity,
        }
        if match.found and match.match_type == "exact":
            result.preserved.append(entry)
        elif match.found:
            entry["status"] = "preserved_modified" if match.similarity >= WARN_SIMILARITY else "warning_modified"
            result.modified.append(entry)
        else:
            result.missing.append(entry)
            logger.warning(
                "Keep marker not found in compressed output",
                extra={
                    "marker_id": marker.marker_id,
                    "weight": marker.weight,
                    "similarity": match.similarity,
                },
            )
    return result


def verification_report(result: VerificationResult) -> str:
    """Human readable multi-line report."""
    summary = result.summary()
    lines = [
        "=== Keep Marker Verification ===",
        f"Checked: {summary['total_checked']}",
        f"Fully preserved: {summary['fully_preserved']}",
        f"Slightly modified: {summary['slightly_modified']}",
        f"Missing: {summary['missing']}",
        f"Status: {'PASSED' if result.passed else 'FAILED'}",
    ]
    for entry in result.missing:
        lines.append(f"  missing [{entry['marker_id']}] weight={entry['weight']:.2f}")
    return "\n".join(lines)
