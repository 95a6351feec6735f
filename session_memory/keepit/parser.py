"""Keep-marker extraction.

Syntax: ``##keepit0.75##text to keep``. The weight is a decimal with
exactly two fractional digits. The marked content runs until the next
marker token, a blank line, or the end of the text.
"""

import re
from dataclasses import dataclass
from typing import Iterable, Iterator
from uuid import uuid4

from ..models.manifest import KeepitMarker, MarkerContext, MarkerPosition
from ..models.message import Message, utc_now_iso
from ..utils.errors import ValidationError
from ..utils.logger import get_logger

logger = get_logger(__name__)

WEIGHT_PRESETS = {
    "PINNED": 1.00,
    "CRITICAL": 0.90,
    "IMPORTANT": 0.75,
    "NOTABLE": 0.50,
    "MINOR": 0.25,
    "HINT": 0.10,
}

CONTEXT_CHARS = 50

# Any token shaped like a marker; the weight is checked separately so a
# malformed one can be skipped without losing the rest of the text.
_TOKEN = re.compile(r"##keepit([^#\n]*)##", re.IGNORECASE)
_WEIGHT = re.compile(r"^\d+\.\d{2}$")
_CONTENT_END = re.compile(r"##keepit|\n\n", re.IGNORECASE)


@dataclass(frozen=True)
class ExtractedMarker:
    weight: float
    content: str
    start_index: int
    end_index: int


def normalize_weight(value: float) -> float:
    """Clamp to [0, 1] and round to two decimals."""
    return round(min(1.0, max(0.0, value)), 2)


def _parse_weight(raw: str) -> float | None:
    if not _WEIGHT.match(raw):
        return None
    try:
        return normalize_weight(float(raw))
    except ValueError:
        return None


def extract_markers(text: str) -> Iterator[ExtractedMarker]:
    """Yield markers in text order.

    Lazy and side-effect free; call again to restart. Markers whose
    weight does not parse, or whose content is empty, are skipped.
    """
    if not text:
        return
    for token in _TOKEN.finditer(text):
        content_start = token.end()
        stop = _CONTENT_END.search(text, content_start)
        content_end = stop.start() if stop else len(text)

        weight = _parse_weight(token.group(1))
        if weight is None:
            logger.debug("Skipping malformed keep marker", extra={"token": token.group(0)[:40]})
            continue

        content = text[content_start:content_end].strip()
        if not content:
            continue

        yield ExtractedMarker(
            weight=weight,
            content=content,
            start_index=token.start(),
            end_index=content_end,
        )


def is_pinned(weight: float) -> bool:
    return weight >= WEIGHT_PRESETS["PINNED"]


def preset_name(weight: float) -> str | None:
    """Name of the preset with exactly this weight, if any."""
    for name, preset in WEIGHT_PRESETS.items():
        if abs(preset - weight) < 0.001:
            return name
    return None


def new_marker_id() -> str:
    return f"keepit_{uuid4().hex[:12]}"


def find_markers_in_messages(messages: Iterable[Message]) -> list[KeepitMarker]:
    """Build manifest marker records for every marker in user/assistant messages."""
    markers: list[KeepitMarker] = []
    now = utc_now_iso()
    for message in messages:
        if message.role not in ("user", "assistant"):
            continue
        text = message.text_content
        for found in extract_markers(text):
            markers.append(
                KeepitMarker(
                    marker_id=new_marker_id(),
                    message_uuid=message.uuid,
                    weight=found.weight,
                    content=found.content,
                    position=MarkerPosition(start=found.start_index, end=found.end_index),
                    context=MarkerContext(
                        before=text[max(0, found.start_index - CONTEXT_CHARS):found.start_index],
                        after=text[found.end_index:found.end_index + CONTEXT_CHARS],
                    ),
                    created_at=now,
                )
            )
    return markers


def create_marker(weight: float, content: str) -> str:
    """Render marker syntax for ``content``."""
    if not 0.0 <= weight <= 1.0:
        raise ValidationError("Keep marker weight must be between 0.00 and 1.00", field="weight", value=weight)
    if not content or not content.strip():
        raise ValidationError("Keep marker content must not be empty", field="content")
    return f"##keepit{weight:.2f}##{content.strip()}"


def strip_markers(text: str) -> str:
    """Remove marker tokens, keeping the marked content."""
    return _TOKEN.sub("", text or "")


def validate_marker_syntax(text: str) -> list[dict]:
    """Report marker tokens that would be skipped or clamped.

    Returns:
        One dict per issue: ``{"type": "malformed" | "out_of_range", "position", "token"}``
    """
    issues = []
    for token in _TOKEN.finditer(text or ""):
        raw = token.group(1)
        if not _WEIGHT.match(raw):
            issues.append({"type": "malformed", "position": token.start(), "token": token.group(0)})
        elif float(raw) > 1.0:
            issues.append({"type": "out_of_range", "position": token.start(), "token": token.group(0)})
    return issues
