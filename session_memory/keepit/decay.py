"""Keep-marker decay model.

A marker survives a compression when its weight reaches the survival
threshold::

    threshold = base(level) + (ratio / 100) * min(distance, max_distance) / max_distance

Older sessions (larger distance) and harder compressions (larger ratio,
harsher level) raise the bar. Pinned markers (weight 1.00) always
survive without consulting the threshold.
"""

from dataclasses import dataclass
from typing import Any, Iterable

from ..config.models import DecayConfig
from ..models.settings import CompressionLevel

MAX_RATIO = 100
THRESHOLD_CAP = 0.99

RECOMMENDED_WEIGHTS = {
    "always_keep": 1.00,
    "critical": 0.90,
    "very_important": 0.80,
    "important": 0.70,
    "useful": 0.50,
    "nice_to_have": 0.30,
    "minor": 0.15,
}

SURVIVAL_SCENARIOS = [
    ("Light (3:1)", 3, CompressionLevel.LIGHT),
    ("Moderate (10:1)", 10, CompressionLevel.MODERATE),
    ("Standard (15:1)", 15, CompressionLevel.MODERATE),
    ("Aggressive (25:1)", 25, CompressionLevel.AGGRESSIVE),
    ("Maximum (50:1)", 50, CompressionLevel.AGGRESSIVE),
]


def aggressiveness_for_ratio(ratio: float, explicit: "CompressionLevel | str | None" = None) -> CompressionLevel:
    """Level used by the formula: the explicit one, else derived from the ratio."""
    if explicit is not None:
        return CompressionLevel(explicit)
    if ratio <= 5:
        return CompressionLevel.LIGHT
    if ratio <= 15:
        return CompressionLevel.MODERATE
    return CompressionLevel.AGGRESSIVE


@dataclass(frozen=True)
class DecayDecision:
    marker_id: str | None
    weight: float
    threshold: float
    survives: bool
    pinned: bool


class DecayModel:
    """Pure survival computation parameterized by ``DecayConfig``."""

    def __init__(self, config: DecayConfig | None = None) -> None:
        self.config = config or DecayConfig()

    def base(self, level: CompressionLevel | str) -> float:
        return getattr(self.config.compression_base, CompressionLevel(level).value)

    def is_pinned(self, weight: float) -> bool:
        return weight >= self.config.pinned_weight

    def threshold(
        self,
        session_distance: float,
        compression_ratio: float,
        level: CompressionLevel | str,
    ) -> float:
        max_distance = self.config.max_session_distance
        ratio_factor = min(max(compression_ratio, 0), MAX_RATIO) / 100
        distance_factor = min(max(session_distance, 0), max_distance) / max_distance
        raw = self.base(level) + ratio_factor * distance_factor
        return round(min(raw, THRESHOLD_CAP), 4)

    def should_survive(
        self,
        weight: float,
        session_distance: float,
        compression_ratio: float,
        level: CompressionLevel | str,
    ) -> bool:
        if self.is_pinned(weight):
            return True
        return weight >= self.threshold(session_distance, compression_ratio, level)

    def decide(
        self,
        markers: Iterable[Any],
        session_distance: float,
        compression_ratio: float,
        level: CompressionLevel | str,
    ) -> list[DecayDecision]:
        """One decision per marker (anything with ``weight`` and optionally ``marker_id``)."""
        threshold = self.threshold(session_distance, compression_ratio, level)
        decisions = []
        for marker in markers:
            weight = marker.weight
            pinned = self.is_pinned(weight)
            decisions.append(
                DecayDecision(
                    marker_id=getattr(marker, "marker_id", None),
                    weight=weight,
                    threshold=threshold,
                    survives=pinned or weight >= threshold,
                    pinned=pinned,
                )
            )
        return decisions

    def preview(
        self,
        markers: Iterable[Any],
        session_distance: float,
        compression_ratio: float,
        level: "CompressionLevel | str | None" = None,
    ) -> dict:
        """Decisions plus summary statistics, without touching any record."""
        resolved = aggressiveness_for_ratio(compression_ratio, level)
        decisions = self.decide(markers, session_distance, compression_ratio, resolved)
        surviving = [d for d in decisions if d.survives]
        summarized = [d for d in decisions if not d.survives]
        return {
            "threshold": self.threshold(session_distance, compression_ratio, resolved),
            "level": resolved.value,
            "surviving": surviving,
            "summarized": summarized,
            "stats": {
                "total": len(decisions),
                "surviving_count": len(surviving),
                "summarized_count": len(summarized),
                "pinned_count": sum(1 for d in decisions if d.pinned),
            },
        }

    def analyze_survival(self, markers: list[Any]) -> dict:
        """Survival under a fixed ladder of scenarios at distance 0."""
        scenarios = []
        for name, ratio, level in SURVIVAL_SCENARIOS:
            preview = self.preview(markers, 0, ratio, level)
            surviving = preview["stats"]["surviving_count"]
            scenarios.append({
                "name": name,
                "compression_ratio": ratio,
                "threshold": preview["threshold"],
                "surviving": surviving,
                "summarized": preview["stats"]["summarized_count"],
                "survival_rate": round(surviving / len(markers) * 100, 1) if markers else None,
            })
        return {
            "total_markers": len(markers),
            "pinned_count": sum(1 for m in markers if self.is_pinned(m.weight)),
            "scenarios": scenarios,
        }

    def explain(
        self,
        weight: float,
        session_distance: float = 0,
        compression_ratio: float = 10,
        level: "CompressionLevel | str | None" = None,
    ) -> dict:
        resolved = aggressiveness_for_ratio(compression_ratio, level)
        base = self.base(resolved)
        max_distance = self.config.max_session_distance
        ratio_factor = min(compression_ratio, MAX_RATIO) / 100
        distance_factor = min(session_distance, max_distance) / max_distance
        threshold = self.threshold(session_distance, compression_ratio, resolved)
        pinned = self.is_pinned(weight)
        survives = self.should_survive(weight, session_distance, compression_ratio, resolved)
        if pinned:
            reason = f"Pinned content (weight {weight:.2f}) always survives"
        elif survives:
            reason = f"Weight {weight:.2f} >= threshold {threshold:.3f}"
        else:
            reason = f"Weight {weight:.2f} < threshold {threshold:.3f}"
        return {
            "level": resolved.value,
            "base": base,
            "ratio_factor": round(ratio_factor, 3),
            "distance_factor": round(distance_factor, 3),
            "formula": f"{base} + ({ratio_factor:.3f} * {distance_factor:.3f})",
            "threshold": threshold,
            "survives": survives,
            "pinned": pinned,
            "margin": round(weight - threshold, 3),
            "reason": reason,
        }


_default_model = DecayModel()


def should_survive(
    weight: float,
    session_distance: float,
    compression_ratio: float,
    level: CompressionLevel | str,
) -> bool:
    """Survival decision with the default configuration."""
    return _default_model.should_survive(weight, session_distance, compression_ratio, level)


def calculate_threshold(session_distance: float, compression_ratio: float, level: CompressionLevel | str) -> float:
    return _default_model.threshold(session_distance, compression_ratio, level)


def preview_decay(
    markers: Iterable[Any],
    session_distance: float,
    compression_ratio: float,
    level: "CompressionLevel | str | None" = None,
) -> dict:
    return _default_model.preview(markers, session_distance, compression_ratio, level)


def analyze_survival(markers: list[Any]) -> dict:
    return _default_model.analyze_survival(markers)


def explain(
    weight: float,
    session_distance: float = 0,
    compression_ratio: float = 10,
    level: "CompressionLevel | str | None" = None,
) -> dict:
    """Step-by-step breakdown of one survival decision."""
    return _default_model.explain(weight, session_distance, compression_ratio, level)


def recommended_weight(importance: str) -> float:
    """Weight for a named importance ("very important" -> 0.80); 0.50 when unknown."""
    key = importance.strip().lower().replace(" ", "_")
    return RECOMMENDED_WEIGHTS.get(key, 0.50)
