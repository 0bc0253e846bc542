from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path
from typing import AsyncIterator, Hashable, Iterator

if os.name == "nt":  # pragma: no cover
    import msvcrt
else:
    import fcntl

LOCK_POLL_S = 0.05


def _try_lock(fileno: int) -> bool:
    try:
        if os.name == "nt":  # pragma: no cover
            msvcrt.locking(fileno, msvcrt.LK_NBLCK, 1)
        else:
            fcntl.flock(fileno, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except (BlockingIOError, PermissionError):
        return False
    return True


def _unlock(fileno: int) -> None:
    if os.name == "nt":  # pragma: no cover
        msvcrt.locking(fileno, msvcrt.LK_UNLCK, 1)
    else:
        fcntl.flock(fileno, fcntl.LOCK_UN)


@contextmanager
def file_lock(path: Path) -> Iterator[None]:
    """
    Hold an exclusive advisory lock on ``path`` (created if missing) for the
    duration of the block. Blocks until the lock is available.

    Only for short read-modify-write sections that never await; use
    :func:`async_file_lock` around anything that yields to the event loop.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a+b") as f:
        if os.name == "nt":  # pragma: no cover
            f.seek(0)
            msvcrt.locking(f.fileno(), msvcrt.LK_LOCK, 1)
        else:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            f.seek(0)
            _unlock(f.fileno())


@asynccontextmanager
async def async_file_lock(path: Path, *, poll_s: float = LOCK_POLL_S) -> AsyncIterator[None]:
    """
    Exclusive lock on ``path`` that waits without blocking the event loop.

    Held across awaits, so another process (or another open of the same file
    in this one) polls until it is released.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a+b") as f:
        f.seek(0)
        while not _try_lock(f.fileno()):
            await asyncio.sleep(poll_s)
        try:
            yield
        finally:
            f.seek(0)
            _unlock(f.fileno())


class KeyedLocks:
    """
    One :class:`asyncio.Lock` per key, created on first use and dropped once
    nobody holds or waits for it.
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


def write_json_atomic(path: Path, text: str) -> None:
    """Write ``text`` to ``path`` via a temp file that is fsynced before the rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(text)
        f.flush()
        os.fsync(f.fileno())
    tmp.replace(path)
