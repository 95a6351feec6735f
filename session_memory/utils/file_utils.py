"""File utilities.

- Async reading and atomic writing (temp file + rename) via aiofiles
- Cross-process file locking via filelock
"""

import json
from pathlib import Path
from typing import Any
from uuid import uuid4

import aiofiles
import aiofiles.os
from filelock import FileLock, Timeout as FileLockTimeout

from .logger import get_logger

logger = get_logger(__name__)


class LockAcquireTimeout(Exception):
    """Raised when file lock acquisition times out."""
    pass


async def async_read_file(file_path: str | Path, encoding: str = "utf-8") -> str:
    """Read a whole text file.

    Raises:
        FileNotFoundError: If the file does not exist
    """
    async with aiofiles.open(Path(file_path), mode="r", encoding=encoding) as f:
        content = await f.read()
    logger.debug("File read", extra={"path": str(file_path), "size": len(content)})
    return content


async def async_write_file(
    file_path: str | Path,
    content: str,
    encoding: str = "utf-8",
    create_dirs: bool = True,
    exclusive: bool = False,
) -> int:
    """Write a text file atomically: write a temp sibling, then rename.

    With ``exclusive`` the temp file is hard-linked to the final name
    instead, so an existing file is never replaced.

    Returns:
        Size of the written content in bytes

    Raises:
        FileExistsError: ``exclusive`` and the target already exists
    """
    path = Path(file_path)

    if create_dirs:
        path.parent.mkdir(parents=True, exist_ok=True)

    temp_path = path.with_name(f".{path.name}.{uuid4().hex[:8]}.tmp")

    try:
        async with aiofiles.open(temp_path, mode="w", encoding=encoding) as f:
            await f.write(content)
        if exclusive:
            await aiofiles.os.link(temp_path, path)
            await aiofiles.os.remove(temp_path)
        else:
            await aiofiles.os.replace(temp_path, path)
    except OSError as e:
        if isinstance(e, FileExistsError):
            logger.warning("Refusing to overwrite file", extra={"path": str(path)})
        else:
            logger.error("Failed to write file", extra={"path": str(path), "error": str(e)})
        if temp_path.exists():
            await aiofiles.os.remove(temp_path)
        raise

    size = len(content.encode(encoding))
    logger.debug("File written", extra={"path": str(path), "size": size})
    return size


async def async_write_json(file_path: str | Path, data: Any) -> int:
    """Atomically write ``data`` as pretty-printed JSON."""
    return await async_write_file(file_path, json.dumps(data, indent=2, ensure_ascii=False))


async def async_append_file(file_path: str | Path, content: str, encoding: str = "utf-8") -> None:
    """Append text to a file (append-only copies)."""
    async with aiofiles.open(Path(file_path), mode="a", encoding=encoding) as f:
        await f.write(content)


async def async_remove(file_path: str | Path) -> bool:
    """Remove a file if present. Returns True if something was removed."""
    path = Path(file_path)
    if not path.exists():
        return False
    await aiofiles.os.remove(path)
    return True


class AsyncFileLock:
    """Cross-process lock on ``<file>.lock`` usable as sync or async context manager."""

    def __init__(self, file_path: str | Path, timeout: float = 10.0) -> None:
        """Initialize file lock.

        Args:
            file_path: Path to the protected file (lock file gets a .lock suffix)
            timeout: Seconds to wait for the lock
        """
        self.lock_path = Path(str(file_path) + ".lock")
        self.timeout = timeout
        self._lock = FileLock(self.lock_path)

    def __enter__(self) -> "AsyncFileLock":
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._lock.acquire(timeout=self.timeout)
        except FileLockTimeout:
            raise LockAcquireTimeout(
                f"Failed to acquire lock: {self.lock_path} (timeout: {self.timeout}s)"
            )
        logger.debug("Lock acquired", extra={"path": str(self.lock_path)})
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self._lock.release()
        logger.debug("Lock released", extra={"path": str(self.lock_path)})

    async def __aenter__(self) -> "AsyncFileLock":
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.__exit__(exc_type, exc_val, exc_tb)
