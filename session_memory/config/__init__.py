"""Configuration management.

- YAML-based configuration
- Type validation via Pydantic
- Hot-reload support via watchdog
"""

from .loader import ConfigLoadError, build_config, env_overrides, load_config, load_config_from_string
from .manager import ConfigManager, get_config
from .models import (
    CompositionConfig,
    CompressionDefaults,
    Config,
    DecayConfig,
    LockConfig,
    LoggingConfig,
    StorageConfig,
)

__all__ = [
    "ConfigLoadError",
    "ConfigManager",
    "CompositionConfig",
    "CompressionDefaults",
    "Config",
    "DecayConfig",
    "LockConfig",
    "LoggingConfig",
    "StorageConfig",
    "build_config",
    "env_overrides",
    "get_config",
    "load_config",
    "load_config_from_string",
]
