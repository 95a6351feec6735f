"""Application wiring.

Startup sequence:
1. Load configuration
2. Set up logging
3. Build the services over one storage root, sharing one manifest store and lock registry
4. Optionally start the config watcher

Shutdown stops the watcher. Embedders supply the summarizer; without one
the compression orchestrator is not built and compositions cannot
compress on the fly.
"""

from pathlib import Path

from .config.manager import ConfigManager
from .config.models import Config
from .services.artifacts import ArtifactStore
from .services.composition import CompositionEngine
from .services.keepit_service import KeepitService
from .services.locks import SessionLockRegistry
from .services.manifest_store import ManifestStore
from .services.messages import Summarizer
from .services.orchestrator import CompressionOrchestrator
from .services.sessions import SessionService
from .services.storage import StoragePaths
from .services.token_counter import Counter
from .services.versions import VersionService
from .utils.logger import get_logger, setup_logging

logger = get_logger(__name__)


class SessionMemory:
    """Every service of one storage root, wired together."""

    def __init__(
        self,
        summarizer: Summarizer | None = None,
        config_path: Path | None = None,
        storage_root: str | Path | None = None,
        token_counter: Counter | None = None,
        watch_config: bool = False,
    ) -> None:
        """Initialize the application.

        Args:
            summarizer: External summarization capability
            config_path: YAML config file (defaults to ``SESSION_MEMORY_CONFIG`` or ./session-memory.yaml)
            storage_root: Overrides ``storage.root`` from config
            token_counter: Overrides the tiktoken counter
            watch_config: Reload configuration when the file changes
        """
        self.config_manager = ConfigManager(config_path)
        if config_path is not None:
            self.config_manager.use_path(config_path)
        self.summarizer = summarizer
        self.storage_root = storage_root
        self.token_counter = token_counter
        self.watch_config = watch_config
        self.started = False

    @property
    def config(self) -> Config:
        return self.config_manager.config

    def start(self) -> "SessionMemory":
        if self.started:
            return self

        config = self.config
        setup_logging(config.logging)
        logger.info("Configuration loaded", extra={"config_path": str(self.config_manager.config_path)})

        self.paths = StoragePaths(self.storage_root or config.storage.root)
        self.store = ManifestStore(self.paths, lock_timeout=config.storage.manifest_lock_timeout)
        self.locks = SessionLockRegistry(stale_after_seconds=config.locks.stale_after_seconds)
        self.artifacts = ArtifactStore(self.paths)
        self.sessions = SessionService(store=self.store, token_counter=self.token_counter)
        self.versions = VersionService(store=self.store, artifacts=self.artifacts)
        self.keepits = KeepitService(store=self.store)
        self.orchestrator = None
        if self.summarizer is not None:
            self.orchestrator = CompressionOrchestrator(
                self.summarizer,
                store=self.store,
                locks=self.locks,
                token_counter=self.token_counter,
                artifacts=self.artifacts,
            )
        self.compositions = CompositionEngine(
            store=self.store, artifacts=self.artifacts, orchestrator=self.orchestrator
        )

        self.config_manager.on_change(self._apply_config)
        if self.watch_config:
            self.config_manager.start_watcher()

        self.started = True
        logger.info(
            "Session memory started",
            extra={
                "storage_root": str(self.paths.root),
                "compression_enabled": self.orchestrator is not None,
                "watch_config": self.watch_config,
            },
        )
        return self

    def _apply_config(self, config: Config) -> None:
        """Settings that take effect without a restart: logging and lock staleness."""
        setup_logging(config.logging)
        self.locks.stale_after_seconds = config.locks.stale_after_seconds
        logger.info("Configuration reloaded", extra={"config_path": str(self.config_manager.config_path)})

    def stop(self) -> None:
        if not self.started:
            return
        self.config_manager.stop_watcher()
        self.config_manager.remove_callback(self._apply_config)
        self.started = False
        logger.info("Session memory stopped")

    def __enter__(self) -> "SessionMemory":
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()
