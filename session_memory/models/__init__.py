"""Pydantic data models."""

from .manifest import (
    CURRENT_SCHEMA_VERSION,
    CompositionComponent,
    CompositionRecord,
    CompressionRecord,
    FileSizes,
    KeepitMarker,
    KeepitStats,
    Manifest,
    MessageRange,
    ProjectSettings,
    SelectedPart,
    SessionRecord,
)
from .message import Message
from .settings import (
    CompressionLevel,
    CompressionSettings,
    CustomTier,
    TieredSettings,
    UniformSettings,
    parse_settings,
)

__all__ = [
    "CURRENT_SCHEMA_VERSION",
    "CompositionComponent",
    "CompositionRecord",
    "CompressionLevel",
    "CompressionRecord",
    "CompressionSettings",
    "CustomTier",
    "FileSizes",
    "KeepitMarker",
    "KeepitStats",
    "Manifest",
    "Message",
    "MessageRange",
    "ProjectSettings",
    "SelectedPart",
    "SessionRecord",
    "TieredSettings",
    "UniformSettings",
    "parse_settings",
]
