"""YAML configuration loading.

Values come from, in increasing precedence: model defaults, the YAML
document, and ``SESSION_MEMORY__SECTION__FIELD`` environment variables.
"""

import os
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import ValidationError

from .models import Config

ENV_PREFIX = "SESSION_MEMORY__"


class ConfigLoadError(Exception):
    """Raised when configuration loading fails."""
    pass


def env_overrides(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Nested overrides from variables like ``SESSION_MEMORY__DECAY__MAX_SESSION_DISTANCE=20``.

    Values are parsed as YAML scalars so numbers and booleans keep their type.

    Raises:
        ConfigLoadError: Two variables disagree on whether a key is a section
    """
    environ = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}
    for key in sorted(environ):
        if not key.startswith(ENV_PREFIX):
            continue
        path = [part.lower() for part in key[len(ENV_PREFIX):].split("__") if part]
        if not path:
            continue
        raw = environ[key]
        try:
            value = yaml.safe_load(raw)
        except yaml.YAMLError:
            value = raw

        node = overrides
        for part in path[:-1]:
            node = node.setdefault(part, {})
            if not isinstance(node, dict):
                raise ConfigLoadError(f"Environment variable {key} overrides a value, not a section")
        node[path[-1]] = value
    return overrides


def _merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def build_config(data: Any, source: str, environ: Mapping[str, str] | None = None) -> Config:
    """Validate a parsed document (``None`` is an empty one) after applying overrides.

    Raises:
        ConfigLoadError: With one line per failing field
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigLoadError(f"Configuration must be a YAML mapping ({source})")

    try:
        return Config.model_validate(_merge(data, env_overrides(environ)))
    except ValidationError as e:
        problems = "\n".join(
            f"  - {'.'.join(str(x) for x in error['loc'])}: {error['msg']}" for error in e.errors()
        )
        raise ConfigLoadError(f"Configuration validation failed ({source}):\n{problems}")


def load_config(config_path: Path, environ: Mapping[str, str] | None = None) -> Config:
    """Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file
        environ: Environment to read overrides from (defaults to ``os.environ``)

    Raises:
        ConfigLoadError: If the file is missing, unreadable or invalid
    """
    try:
        text = Path(config_path).read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigLoadError(f"Configuration file not found: {config_path}")
    except OSError as e:
        raise ConfigLoadError(f"Failed to read configuration file: {e}")

    return load_config_from_string(text, source=str(config_path), environ=environ)


def load_config_from_string(
    yaml_content: str,
    source: str = "<string>",
    environ: Mapping[str, str] | None = None,
) -> Config:
    try:
        data = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Invalid YAML in {source}: {e}")

    return build_config(data, source, environ)
