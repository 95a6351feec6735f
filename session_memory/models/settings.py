"""Compression settings as a tagged union on ``mode``.

``UniformSettings`` compresses every message at one ratio;
``TieredSettings`` compresses older messages harder than recent ones
using a preset (or custom) list of tiers.
"""

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from ..utils.errors import InvalidSettingsError


class CompressionLevel(str, Enum):
    LIGHT = "light"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"

    @property
    def ordinal(self) -> int:
        return LEVEL_ORDER[self]


LEVEL_ORDER = {
    CompressionLevel.LIGHT: 1,
    CompressionLevel.MODERATE: 2,
    CompressionLevel.AGGRESSIVE: 3,
}

Aggressiveness = Literal["minimal", "moderate", "aggressive"]
TierPreset = Literal["gentle", "standard", "aggressive"]
KeepitMode = Literal["decay", "preserve-all", "ignore"]
ModelName = Literal["opus", "sonnet", "haiku"]

CAMEL_CONFIG = {
    "alias_generator": to_camel,
    "populate_by_name": True,
    "extra": "ignore",
}


class CustomTier(BaseModel):
    """One tier: messages up to ``end_percent`` of the range use this ratio."""

    end_percent: int = Field(..., ge=1, le=100, description="Upper bound of the tier, in percent")
    compaction_ratio: float = Field(..., ge=2, le=50, description="Compaction ratio for the tier")
    aggressiveness: Aggressiveness | None = Field(default=None)

    model_config = CAMEL_CONFIG


TIER_PRESETS: dict[str, list[CustomTier]] = {
    "gentle": [
        CustomTier(end_percent=25, compaction_ratio=10, aggressiveness="moderate"),
        CustomTier(end_percent=50, compaction_ratio=7, aggressiveness="moderate"),
        CustomTier(end_percent=75, compaction_ratio=5, aggressiveness="minimal"),
        CustomTier(end_percent=90, compaction_ratio=4, aggressiveness="minimal"),
        CustomTier(end_percent=100, compaction_ratio=2, aggressiveness="minimal"),
    ],
    "standard": [
        CustomTier(end_percent=25, compaction_ratio=25, aggressiveness="aggressive"),
        CustomTier(end_percent=50, compaction_ratio=15, aggressiveness="aggressive"),
        CustomTier(end_percent=75, compaction_ratio=10, aggressiveness="moderate"),
        CustomTier(end_percent=90, compaction_ratio=5, aggressiveness="moderate"),
        CustomTier(end_percent=100, compaction_ratio=3, aggressiveness="minimal"),
    ],
    "aggressive": [
        CustomTier(end_percent=25, compaction_ratio=50, aggressiveness="aggressive"),
        CustomTier(end_percent=50, compaction_ratio=35, aggressiveness="aggressive"),
        CustomTier(end_percent=75, compaction_ratio=20, aggressiveness="aggressive"),
        CustomTier(end_percent=90, compaction_ratio=10, aggressiveness="moderate"),
        CustomTier(end_percent=100, compaction_ratio=5, aggressiveness="minimal"),
    ],
}

_AGGRESSIVENESS_LEVEL = {
    "minimal": CompressionLevel.LIGHT,
    "moderate": CompressionLevel.MODERATE,
    "aggressive": CompressionLevel.AGGRESSIVE,
}

_PRESET_LEVEL = {
    "gentle": CompressionLevel.LIGHT,
    "standard": CompressionLevel.MODERATE,
    "aggressive": CompressionLevel.AGGRESSIVE,
}


class _CommonSettings(BaseModel):
    model: ModelName = Field(default="opus", description="Summarizer model selector")
    skip_first_messages: int = Field(default=0, ge=0, description="Leading messages passed through verbatim")
    keepit_mode: KeepitMode = Field(default="ignore", description="How keep markers are handled")
    session_distance: int | None = Field(
        default=None, ge=0, description="Age of the session relative to the current one (1 = most recent)"
    )

    model_config = CAMEL_CONFIG


class UniformSettings(_CommonSettings):
    mode: Literal["uniform"] = "uniform"
    compaction_ratio: float = Field(default=10, ge=2, le=50)
    aggressiveness: Aggressiveness = Field(default="moderate")

    @property
    def preset_label(self) -> str:
        return self.aggressiveness

    @property
    def compression_level(self) -> CompressionLevel:
        return _AGGRESSIVENESS_LEVEL[self.aggressiveness]

    @property
    def effective_ratio(self) -> float:
        return float(self.compaction_ratio)


class TieredSettings(_CommonSettings):
    mode: Literal["tiered"] = "tiered"
    tier_preset: TierPreset = Field(default="standard")
    custom_tiers: list[CustomTier] | None = Field(default=None, min_length=1)

    @property
    def tiers(self) -> list[CustomTier]:
        return self.custom_tiers or TIER_PRESETS[self.tier_preset]

    @property
    def preset_label(self) -> str:
        return "custom" if self.custom_tiers else self.tier_preset

    @property
    def compression_level(self) -> CompressionLevel:
        if self.custom_tiers:
            return CompressionLevel.MODERATE
        return _PRESET_LEVEL[self.tier_preset]

    @property
    def effective_ratio(self) -> float:
        """Mean tier ratio weighted by the share of messages each tier covers."""
        total = 0.0
        previous_end = 0
        for tier in sorted(self.tiers, key=lambda t: t.end_percent):
            span = max(0, tier.end_percent - previous_end)
            total += span * tier.compaction_ratio
            previous_end = max(previous_end, tier.end_percent)
        return round(total / previous_end, 2) if previous_end else 0.0


CompressionSettings = Annotated[Union[UniformSettings, TieredSettings], Field(discriminator="mode")]

_settings_adapter: TypeAdapter = TypeAdapter(CompressionSettings)


def parse_settings(data: "dict[str, Any] | UniformSettings | TieredSettings | None") -> "UniformSettings | TieredSettings":
    """Validate raw settings; a missing ``mode`` means tiered.

    Raises:
        InvalidSettingsError: With one message per failing field
    """
    if isinstance(data, (UniformSettings, TieredSettings)):
        return data
    payload = dict(data or {})
    payload.setdefault("mode", "tiered")
    try:
        return _settings_adapter.validate_python(payload)
    except PydanticValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"{loc}: {error['msg']}" if loc else error["msg"])
        raise InvalidSettingsError(errors)


def dump_settings(settings: "UniformSettings | TieredSettings") -> dict[str, Any]:
    return settings.model_dump(by_alias=True, mode="json")
