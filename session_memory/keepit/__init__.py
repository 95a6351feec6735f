"""Keep markers: extraction, decay and verification."""

from .decay import DecayDecision, DecayModel, aggressiveness_for_ratio, should_survive
from .parser import WEIGHT_PRESETS, extract_markers, find_markers_in_messages
from .verifier import VerificationResult, verify_preservation

__all__ = [
    "WEIGHT_PRESETS",
    "DecayDecision",
    "DecayModel",
    "VerificationResult",
    "aggressiveness_for_ratio",
    "extract_markers",
    "find_markers_in_messages",
    "should_survive",
    "verify_preservation",
]
