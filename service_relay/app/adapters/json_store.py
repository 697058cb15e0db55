"""
JSON document tables backed by files on disk.

Each table is one JSON document. Reads degrade to a default value when the
file is missing or unreadable; writes replace the file atomically and raise
``PersistenceError`` when they fail. All read-modify-write cycles on a path
go through a single ``asyncio.Lock`` so concurrent handlers never lose each
other's updates.
"""

import asyncio
import copy
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

from shared.errors import PersistenceError
from shared.logging import get_logger

T = TypeVar("T")

_locks: Dict[str, asyncio.Lock] = {}


def lock_for(path: Path) -> asyncio.Lock:
    """Return the process-wide lock guarding ``path``."""
    key = str(path.resolve())
    lock = _locks.get(key)
    if lock is None:
        lock = _locks[key] = asyncio.Lock()
    return lock


class JsonFileStore:
    """One JSON table stored in a single file."""

    def __init__(self, path, default: Optional[Any] = None):
        self.path = Path(path)
        self._default = {} if default is None else default
        self.logger = get_logger("relay.json_store")

    @property
    def lock(self) -> asyncio.Lock:
        return lock_for(self.path)

    def default(self) -> Any:
        return copy.deepcopy(self._default)

    async def ensure(self) -> None:
        """Create the file with the default document if it does not exist."""
        async with self.lock:
            if not self.path.exists():
                await self._write(self.default())

    async def read(self) -> Any:
        """Load the table, falling back to the default on any read failure."""
        return await asyncio.to_thread(self._read_sync)

    async def write(self, data: Any) -> None:
        async with self.lock:
            await self._write(data)

    async def update(self, mutate: Callable[[Any], T]) -> T:
        """Load, mutate in place and store the table under the path lock."""
        async with self.lock:
            data = await asyncio.to_thread(self._read_sync)
            result = mutate(data)
            await self._write(data)
            return result

    async def transact(self, mutate: Callable[[Any], Awaitable[Tuple[Any, T]]]) -> T:
        """Like ``update`` but for mutations that need to await other I/O.

        ``mutate`` returns ``(new_document, result)``; the document is stored
        only after the coroutine completes.
        """
        async with self.lock:
            data = await asyncio.to_thread(self._read_sync)
            new_data, result = await mutate(data)
            await self._write(new_data)
            return result

    async def _write(self, data: Any) -> None:
        try:
            await asyncio.to_thread(write_json_atomic, self.path, data)
        except (OSError, TypeError, ValueError) as e:
            self.logger.error("Table write failed", path=str(self.path), error=str(e))
            raise PersistenceError(
                "Unable to persist state",
                details={"table": self.path.name}
            ) from e

    def _read_sync(self) -> Any:
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return self.default()
        except (OSError, ValueError) as e:
            self.logger.warning("Table unreadable, using default", path=str(self.path), error=str(e))
            return self.default()
        if not isinstance(data, type(self._default)):
            self.logger.warning("Table has unexpected shape, using default", path=str(self.path))
            return self.default()
        return data


def write_json_atomic(path: Path, data: Any) -> None:
    """Write ``data`` to a temp file beside ``path`` and rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def write_json_exclusive(path: Path, data: Any) -> None:
    """Create ``path`` holding ``data``; fails if the file already exists."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("x", encoding="utf-8") as fh:
        json.dump(data, fh, indent=2)
        fh.flush()
        os.fsync(fh.fileno())
