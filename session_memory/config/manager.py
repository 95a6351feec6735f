"""Configuration manager with hot-reload support."""

import os
import threading
from pathlib import Path
from typing import Callable

from ..utils.logger import get_logger
from .loader import build_config, load_config
from .models import Config

logger = get_logger(__name__)

CONFIG_ENV_VAR = "SESSION_MEMORY_CONFIG"


class ConfigManager:
    """Singleton configuration manager with hot-reload support.

    The configuration file is optional: when it does not exist the
    defaults (plus environment overrides) are used. A file that exists but fails
    validation raises ``ConfigLoadError``.
    """

    _instance: "ConfigManager | None" = None
    _lock = threading.Lock()

    def __new__(cls, config_path: Path | None = None) -> "ConfigManager":
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Path | None = None) -> None:
        if self._initialized:
            return

        env_path = os.environ.get(CONFIG_ENV_VAR)
        self._config_path = config_path or Path(env_path or "session-memory.yaml")
        self._config: Config | None = None
        self._callbacks: list[Callable[[Config], None]] = []
        self._watcher = None
        self._rlock = threading.RLock()
        self._initialized = True

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton (tests, or switching config files)."""
        with cls._lock:
            if cls._instance is not None:
                cls._instance.stop_watcher()
            cls._instance = None

    @property
    def config(self) -> Config:
        """Get current configuration, loading if necessary."""
        with self._rlock:
            if self._config is None:
                self._load()
            return self._config

    @property
    def config_path(self) -> Path:
        return self._config_path

    def use_path(self, config_path: Path) -> None:
        """Point the singleton at another file; the next access loads it."""
        config_path = Path(config_path)
        with self._rlock:
            if config_path == self._config_path:
                return
            if self._config is not None:
                logger.warning(
                    "Configuration file changed after configuration was loaded",
                    extra={"previous": str(self._config_path), "path": str(config_path)},
                )
            self.stop_watcher()
            self._config_path = config_path
            self._config = None

    def set_config(self, config: Config) -> None:
        """Install an in-memory configuration, bypassing the file."""
        with self._rlock:
            self._config = config

    def _load(self) -> None:
        if not self._config_path.exists():
            logger.debug(
                "Configuration file not found, using defaults",
                extra={"path": str(self._config_path)}
            )
            self._config = build_config(None, "defaults")
            return
        self._config = load_config(self._config_path)

    def reload(self) -> None:
        """Reload configuration from file and notify callbacks."""
        with self._rlock:
            self._load()
            config = self._config

        for callback in list(self._callbacks):
            try:
                callback(config)
            except Exception as e:
                logger.error(
                    "Config change callback failed",
                    extra={"callback": getattr(callback, "__name__", repr(callback)), "error": str(e)}
                )

    def on_change(self, callback: Callable[[Config], None]) -> None:
        """Register a callback to be called when configuration changes."""
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[Config], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def start_watcher(self) -> None:
        """Start the file watcher for hot reload."""
        from .watcher import ConfigWatcher

        if self._watcher is None:
            self._watcher = ConfigWatcher(self._config_path, self.reload)
            self._watcher.start()

    def stop_watcher(self) -> None:
        if self._watcher:
            self._watcher.stop()
            self._watcher = None


def get_config() -> Config:
    """Return the ConfigManager singleton's configuration."""
    return ConfigManager().config
