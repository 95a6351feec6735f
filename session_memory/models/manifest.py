"""Manifest document models.

One manifest per project holds every session, compression version,
keep marker and composition. Persisted as JSON with camelCase keys.
"""

from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from .settings import CAMEL_CONFIG, CompressionLevel, CompressionSettings

CURRENT_SCHEMA_VERSION = "1.1.0"


class MarkerPosition(BaseModel):
    start: int = Field(..., ge=0)
    end: int = Field(..., ge=0)

    model_config = CAMEL_CONFIG


class MarkerContext(BaseModel):
    before: str = ""
    after: str = ""

    model_config = CAMEL_CONFIG


class KeepitMarker(BaseModel):
    """A weighted keep marker extracted from one message."""

    marker_id: str = Field(..., description="keepit_ + 12 hex chars")
    message_uuid: str = Field(..., description="Owning message")
    weight: float = Field(..., ge=0.0, le=1.0)
    content: str = Field(..., description="Marked text")
    position: MarkerPosition
    context: MarkerContext = Field(default_factory=MarkerContext)
    created_at: str
    updated_at: str | None = None
    survived_in: list[str] = Field(default_factory=list, description="Version ids that preserved it")
    summarized_in: list[str] = Field(default_factory=list, description="Version ids that summarized it")

    model_config = CAMEL_CONFIG


class MessageRange(BaseModel):
    """Half-open [start_index, end_index) slice of the session's messages."""

    start_index: int = Field(..., ge=0)
    end_index: int = Field(..., ge=0)
    message_count: int = Field(default=0, ge=0)
    start_timestamp: str | None = None
    end_timestamp: str | None = None

    model_config = CAMEL_CONFIG

    def same_slice(self, other: "MessageRange") -> bool:
        return (self.start_index, self.end_index) == (other.start_index, other.end_index)


class KeepitStats(BaseModel):
    preserved: int = Field(default=0, ge=0)
    summarized: int = Field(default=0, ge=0)
    unverified: int = Field(default=0, ge=0)
    weights: dict[str, float] = Field(default_factory=dict, description="marker id -> weight")

    model_config = CAMEL_CONFIG

    @property
    def total(self) -> int:
        return self.preserved + self.summarized

    @property
    def preservation_rate(self) -> float | None:
        return self.preserved / self.total if self.total else None


class FileSizes(BaseModel):
    md: int = 0
    jsonl: int = 0

    model_config = CAMEL_CONFIG


class CompressionRecord(BaseModel):
    """One compression result ("version") of a part of a session."""

    version_id: str
    file: str = Field(..., description="Artifact label; .md and .jsonl share it")
    created_at: str
    settings: CompressionSettings
    input_tokens: int = Field(default=0, ge=0)
    input_messages: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    output_messages: int = Field(default=0, ge=0)
    compression_ratio: float = Field(default=1.0, ge=0.0)
    processing_time_ms: int = Field(default=0, ge=0)
    keepit_stats: KeepitStats | None = Field(default_factory=KeepitStats)
    file_sizes: FileSizes = Field(default_factory=FileSizes)
    tier_results: Any = None
    part_number: int | None = Field(default=None, ge=1)
    compression_level: CompressionLevel | None = None
    is_full_session: bool = False
    message_range: MessageRange | None = None

    model_config = CAMEL_CONFIG


class SessionRecord(BaseModel):
    """A registered conversation log."""

    session_id: str
    original_file: str = Field(..., description="Canonical source; never modified")
    linked_file: str | None = Field(default=None, description="Append-only synced copy")
    link_type: Literal["copy", "symlink"] | None = None
    original_tokens: int = Field(default=0, ge=0)
    original_messages: int = Field(default=0, ge=0)
    first_timestamp: str | None = None
    last_timestamp: str | None = None
    registered_at: str | None = None
    last_accessed: str | None = None
    last_synced_timestamp: str | None = None
    last_synced_message_uuid: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    keepit_markers: list[KeepitMarker] = Field(default_factory=list)
    compressions: list[CompressionRecord] = Field(default_factory=list)

    model_config = CAMEL_CONFIG

    @property
    def source_file(self) -> str:
        """Where messages are read from: the synced copy when there is one."""
        return self.linked_file or self.original_file

    def find_compression(self, version_id: str) -> CompressionRecord | None:
        for record in self.compressions:
            if record.version_id == version_id:
                return record
        return None


class SelectedPart(BaseModel):
    part_number: int
    version_id: str
    output_tokens: int = 0
    output_messages: int = 0
    is_original: bool = False
    message_range: MessageRange | None = None

    model_config = CAMEL_CONFIG


class CompositionComponent(BaseModel):
    session_id: str
    version_id: str
    order: int = Field(..., ge=0)
    token_contribution: int = Field(default=0, ge=0)
    message_contribution: int = Field(default=0, ge=0)
    allocated_budget: int = Field(default=0, ge=0)
    selected_parts: list[SelectedPart] | None = None

    model_config = CAMEL_CONFIG


class OutputFile(BaseModel):
    path: str
    size: int = 0

    model_config = CAMEL_CONFIG


class CompositionRecord(BaseModel):
    composition_id: str
    name: str
    description: str = ""
    created_at: str
    components: list[CompositionComponent] = Field(default_factory=list)
    allocation_strategy: str = "equal"
    total_token_budget: int = 0
    actual_tokens: int = 0
    total_messages: int = 0
    output_files: dict[str, OutputFile] = Field(default_factory=dict)
    used_in_sessions: list[str] = Field(default_factory=list)
    last_used: str | None = None

    model_config = CAMEL_CONFIG

    def references(self, session_id: str, version_id: str) -> bool:
        """True if this composition consumed the given version."""
        for component in self.components:
            if component.session_id != session_id:
                continue
            if component.version_id == version_id:
                return True
            if any(p.version_id == version_id for p in component.selected_parts or []):
                return True
        return False


class ProjectSettings(BaseModel):
    default_compression_preset: Literal["light", "standard", "aggressive", "custom"] = "standard"
    auto_register_new_sessions: bool = False
    keepit_decay_enabled: bool = True

    model_config = CAMEL_CONFIG


class MigrationEntry(BaseModel):
    from_version: str = Field(..., alias="from")
    to_version: str = Field(..., alias="to")
    timestamp: str
    description: str = ""

    model_config = {"populate_by_name": True, "extra": "ignore"}


class Manifest(BaseModel):
    """The whole per-project document."""

    version: str = CURRENT_SCHEMA_VERSION
    revision: int = Field(default=0, ge=0, description="Bumped on every save")
    project_id: str
    original_path: str | None = None
    display_name: str | None = None
    created_at: str
    last_modified: str
    sessions: dict[str, SessionRecord] = Field(default_factory=dict)
    compositions: dict[str, CompositionRecord] = Field(default_factory=dict)
    settings: ProjectSettings = Field(default_factory=ProjectSettings)
    migration_history: list[MigrationEntry] = Field(default_factory=list)

    model_config = CAMEL_CONFIG

    @model_validator(mode="after")
    def validate_keys(self) -> "Manifest":
        """Session and composition keys must match the ids they hold."""
        for key, session in self.sessions.items():
            if key != session.session_id:
                raise ValueError(f"session key {key!r} does not match sessionId {session.session_id!r}")
        for key, composition in self.compositions.items():
            if key != composition.composition_id:
                raise ValueError(
                    f"composition key {key!r} does not match compositionId {composition.composition_id!r}"
                )
        return self

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")
