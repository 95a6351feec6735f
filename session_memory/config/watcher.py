"""Hot reload of the configuration file through watchdog."""

import time
from pathlib import Path
from typing import Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..utils.logger import get_logger

logger = get_logger(__name__)


class ConfigChangeHandler(FileSystemEventHandler):
    """Runs ``callback`` when the config file is written or recreated.

    Editors often emit several events per save; events inside
    ``debounce_seconds`` of the last accepted one are dropped.
    """

    def __init__(self, config_path: Path, callback: Callable[[], None], debounce_seconds: float = 1.0) -> None:
        self.target = Path(config_path).resolve()
        self.callback = callback
        self.debounce_seconds = debounce_seconds
        self._last_fired = 0.0

    def _is_target(self, event: FileSystemEvent) -> bool:
        return not event.is_directory and Path(event.src_path).resolve() == self.target

    def _fire(self, event: FileSystemEvent) -> None:
        if not self._is_target(event):
            return
        now = time.monotonic()
        if self._last_fired and now - self._last_fired < self.debounce_seconds:
            return
        self._last_fired = now
        logger.info("Configuration file changed", extra={"path": str(self.target), "event": event.event_type})
        self.callback()

    def on_modified(self, event: FileSystemEvent) -> None:
        self._fire(event)

    def on_created(self, event: FileSystemEvent) -> None:
        self._fire(event)


class ConfigWatcher:
    """Observes the directory holding the config file; the directory need not contain it yet."""

    def __init__(self, config_path: Path, callback: Callable[[], None], debounce_seconds: float = 1.0) -> None:
        self.config_path = Path(config_path)
        self.handler = ConfigChangeHandler(self.config_path, callback, debounce_seconds)
        self.observer: Observer | None = None

    @property
    def running(self) -> bool:
        return self.observer is not None

    def start(self) -> None:
        if self.running:
            return
        directory = self.config_path.resolve().parent
        if not directory.is_dir():
            logger.warning("Config directory does not exist, hot reload disabled", extra={"path": str(directory)})
            return
        self.observer = Observer()
        self.observer.schedule(self.handler, str(directory), recursive=False)
        self.observer.start()
        logger.info("Config watcher started", extra={"path": str(self.config_path)})

    def stop(self) -> None:
        if not self.running:
            return
        self.observer.stop()
        self.observer.join()
        self.observer = None
        logger.info("Config watcher stopped", extra={"path": str(self.config_path)})
