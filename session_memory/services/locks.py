"""Per-session operation locks.

Locks are keyed ``(project_id, session_id, operation)`` and live in this
process only. Acquisition never waits: a held lock raises
``CompressionInProgressError`` so the caller can retry later.
``acquire_with_timeout`` is the opt-in waiting variant.

Usage::

    with registry.acquire(project_id, session_id, OperationType.COMPRESSION):
        ...
"""

import asyncio
import os
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..config.manager import get_config
from ..models.message import utc_now_iso
from ..utils.errors import CompressionInProgressError, ConflictError, ErrorCode
from ..utils.logger import get_logger

logger = get_logger(__name__)


class OperationType(str, Enum):
    COMPRESSION = "compression"
    IMPORT = "import"
    EXPORT = "export"
    COMPOSITION = "composition"


LockKey = tuple[str, str, str]


@dataclass
class LockInfo:
    project_id: str
    session_id: str
    operation: str
    started_at: str = field(default_factory=utc_now_iso)
    acquired_monotonic: float = field(default_factory=time.monotonic)
    pid: int = field(default_factory=os.getpid)

    @property
    def age_seconds(self) -> float:
        return time.monotonic() - self.acquired_monotonic

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "session_id": self.session_id,
            "operation": self.operation,
            "started_at": self.started_at,
            "age_seconds": round(self.age_seconds, 3),
            "pid": self.pid,
        }


class SessionLock:
    """A held lock. Releasing twice is harmless."""

    def __init__(self, registry: "SessionLockRegistry", key: LockKey, info: LockInfo) -> None:
        self._registry = registry
        self.key = key
        self.info = info
        self._released = False

    def release(self) -> bool:
        if self._released:
            return False
        self._released = True
        return self._registry._release(self.key, self.info)

    def __enter__(self) -> "SessionLock":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    async def __aenter__(self) -> "SessionLock":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


class SessionLockRegistry:
    """In-process registry of held session operation locks."""

    def __init__(self, stale_after_seconds: float | None = None) -> None:
        """Initialize the registry.

        Args:
            stale_after_seconds: Age after which a held lock is considered
                abandoned (defaults to ``locks.stale_after_seconds``)
        """
        if stale_after_seconds is None:
            stale_after_seconds = get_config().locks.stale_after_seconds
        self.stale_after_seconds = stale_after_seconds
        self._locks: dict[LockKey, LockInfo] = {}
        self._mutex = threading.Lock()

    def acquire(
        self,
        project_id: str,
        session_id: str,
        operation: OperationType | str = OperationType.COMPRESSION,
    ) -> SessionLock:
        """Take the lock or fail immediately.

        Raises:
            CompressionInProgressError: If the lock is held and not stale
        """
        operation = OperationType(operation).value
        key = (project_id, session_id, operation)
        with self._mutex:
            existing = self._locks.get(key)
            if existing is not None:
                if existing.age_seconds <= self.stale_after_seconds:
                    raise CompressionInProgressError(session_id, operation)
                logger.warning(
                    "Releasing stale session lock",
                    extra={
                        "project_id": project_id,
                        "session_id": session_id,
                        "operation": operation,
                        "age_seconds": round(existing.age_seconds, 1),
                    },
                )
            info = LockInfo(project_id=project_id, session_id=session_id, operation=operation)
            self._locks[key] = info

        logger.debug("Session lock acquired", extra={"lock_key": ":".join(key)})
        return SessionLock(self, key, info)

    async def acquire_with_timeout(
        self,
        project_id: str,
        session_id: str,
        operation: OperationType | str = OperationType.COMPRESSION,
        timeout: float | None = None,
    ) -> SessionLock:
        """Retry ``acquire`` with exponential backoff (0.1s doubling, capped at 2s).

        Raises:
            ConflictError: LOCK_TIMEOUT when the lock is not free in time
        """
        if timeout is None:
            timeout = get_config().locks.acquire_timeout_seconds
        deadline = time.monotonic() + timeout
        delay = 0.1
        while True:
            try:
                return self.acquire(project_id, session_id, operation)
            except CompressionInProgressError:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise ConflictError(
                        f"Timed out waiting for {OperationType(operation).value} lock on session {session_id}",
                        code=ErrorCode.LOCK_TIMEOUT,
                        details={"session_id": session_id, "timeout_seconds": timeout},
                    )
                await asyncio.sleep(min(delay, remaining))
                delay = min(delay * 2, 2.0)

    def _release(self, key: LockKey, info: LockInfo) -> bool:
        with self._mutex:
            # A stale takeover may have replaced our entry; leave the new holder alone.
            if self._locks.get(key) is not info:
                return False
            del self._locks[key]
        logger.debug("Session lock released", extra={"lock_key": ":".join(key)})
        return True

    def is_locked(self, project_id: str, session_id: str, operation: OperationType | str | None = None) -> bool:
        with self._mutex:
            if operation is not None:
                return (project_id, session_id, OperationType(operation).value) in self._locks
            return any(k[:2] == (project_id, session_id) for k in self._locks)

    def active_operations(self, project_id: str | None = None, session_id: str | None = None) -> list[dict]:
        with self._mutex:
            items = list(self._locks.values())
        return [
            info.to_dict()
            for info in items
            if (project_id is None or info.project_id == project_id)
            and (session_id is None or info.session_id == session_id)
        ]

    def release_stale(self, max_age_seconds: float | None = None) -> int:
        """Drop every lock older than ``max_age_seconds``. Returns the count."""
        max_age = self.stale_after_seconds if max_age_seconds is None else max_age_seconds
        with self._mutex:
            stale = [k for k, info in self._locks.items() if info.age_seconds > max_age]
            for key in stale:
                del self._locks[key]
        if stale:
            logger.warning("Released stale session locks", extra={"count": len(stale)})
        return len(stale)

    def force_release(self, project_id: str, session_id: str, operation: OperationType | str) -> bool:
        key = (project_id, session_id, OperationType(operation).value)
        with self._mutex:
            released = self._locks.pop(key, None) is not None
        if released:
            logger.warning("Session lock force-released", extra={"lock_key": ":".join(key)})
        return released

    def status(self) -> dict[str, Any]:
        with self._mutex:
            items = list(self._locks.values())
        active, stale = [], []
        for info in items:
            entry = info.to_dict()
            entry["is_stale"] = info.age_seconds > self.stale_after_seconds
            (stale if entry["is_stale"] else active).append(entry)
        return {
            "session_locks": active,
            "stale_locks": stale,
            "total_active": len(active),
            "total_stale": len(stale),
        }


# Global instance
_lock_registry: SessionLockRegistry | None = None


def get_lock_registry() -> SessionLockRegistry:
    """Get or create the global lock registry."""
    global _lock_registry
    if _lock_registry is None:
        _lock_registry = SessionLockRegistry()
    return _lock_registry
