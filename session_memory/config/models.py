"""Pydantic models for configuration."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, model_validator


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", description="Log level"
    )
    format: Literal["json", "text"] = Field(default="json", description="Log format")
    file: str | None = Field(default=None, description="Log file path (None = console only)")
    console: bool = Field(default=True, description="Output to console")


class StorageConfig(BaseModel):
    """Where projects, manifests and artifacts live."""

    root: str = Field(
        default=str(Path.home() / ".session-memory"),
        description="Root directory for all projects"
    )
    manifest_lock_timeout: float = Field(
        default=10.0,
        ge=0.1,
        le=300.0,
        description="Seconds to wait for the cross-process manifest file lock"
    )
    migration_backups_kept: int = Field(
        default=5,
        ge=0,
        le=100,
        description="Number of manifest backups kept by cleanup"
    )


class CompressionBaseConfig(BaseModel):
    """Base survival threshold per aggressiveness level."""

    light: float = Field(default=0.10, ge=0.0, le=1.0)
    moderate: float = Field(default=0.30, ge=0.0, le=1.0)
    aggressive: float = Field(default=0.50, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def validate_order(self) -> "CompressionBaseConfig":
        """Harsher levels must not have a lower base."""
        if not (self.light <= self.moderate <= self.aggressive):
            raise ValueError("compression bases must satisfy light <= moderate <= aggressive")
        return self


class DecayConfig(BaseModel):
    """Keep-marker decay configuration."""

    compression_base: CompressionBaseConfig = Field(
        default_factory=CompressionBaseConfig,
        description="Threshold base per level"
    )
    max_session_distance: int = Field(
        default=10,
        ge=1,
        le=1000,
        description="Distance at which the distance factor saturates"
    )
    pinned_weight: float = Field(
        default=1.0,
        ge=0.0,
        le=1.0,
        description="Weights at or above this always survive"
    )


class LockConfig(BaseModel):
    """Per-session operation lock configuration."""

    stale_after_seconds: float = Field(
        default=300.0,
        ge=1.0,
        description="Locks older than this are released automatically"
    )
    acquire_timeout_seconds: float = Field(
        default=30.0,
        ge=0.0,
        description="Default wait for acquire_with_timeout"
    )


class CompositionConfig(BaseModel):
    """Composition engine tuning."""

    overhead_tokens_per_component: int = Field(
        default=50,
        ge=0,
        description="Tokens reserved per component for headers and separators"
    )
    min_total_budget: int = Field(
        default=1000,
        ge=1,
        description="Smallest accepted total token budget"
    )
    acceptance_threshold: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Minimum score for an existing version to be selected"
    )
    part_acceptance_threshold: float = Field(
        default=0.3,
        ge=0.0,
        le=1.0,
        description="Minimum score for a part version to be selected"
    )


class CompressionDefaults(BaseModel):
    """Defaults applied when a compression request omits fields."""

    mode: Literal["uniform", "tiered"] = Field(default="tiered")
    tier_preset: Literal["gentle", "standard", "aggressive"] = Field(default="standard")
    model: Literal["opus", "sonnet", "haiku"] = Field(default="opus")
    keepit_mode: Literal["decay", "preserve-all", "ignore"] = Field(default="ignore")


class Config(BaseModel):
    """Root configuration model. Every section has defaults."""

    logging: LoggingConfig = Field(default_factory=LoggingConfig, description="Logging config")
    storage: StorageConfig = Field(default_factory=StorageConfig, description="Storage config")
    decay: DecayConfig = Field(default_factory=DecayConfig, description="Keep-marker decay config")
    locks: LockConfig = Field(default_factory=LockConfig, description="Session lock config")
    composition: CompositionConfig = Field(
        default_factory=CompositionConfig, description="Composition engine config"
    )
    compression: CompressionDefaults = Field(
        default_factory=CompressionDefaults, description="Compression defaults"
    )
