"""Exclusive advisory lock guarding an event log file.

Every process that reads and then appends to a log holds this lock for
the whole read-append step, so records from different processes land
in one total order. The lock lives in a sidecar ``<log>.lock`` file and
is taken with ``fcntl.flock`` (POSIX only).

Within one process the lock is re-entrant per thread: a CLI command can
hold it across replay and the append that follows, and the append's own
acquisition nests inside. Other threads block until it is released.
"""

from __future__ import annotations

import errno
import fcntl
import threading
from pathlib import Path
from typing import IO, Optional


class _Holder:
    def __init__(self) -> None:
        self.guard = threading.RLock()
        self.depth = 0
        self.handle: Optional[IO[str]] = None


_holders: dict[Path, _Holder] = {}
_holders_guard = threading.Lock()


def lock_path_for(path: Path) -> Path:
    return path.with_name(path.name + ".lock")


def _holder_for(lock_path: Path) -> _Holder:
    key = lock_path.absolute()
    with _holders_guard:
        holder = _holders.get(key)
        if holder is None:
            holder = _holders[key] = _Holder()
        return holder


class FileLock:
    """Context manager holding the exclusive lock for a log file."""

    def __init__(self, path: Path) -> None:
        self.lock_path = lock_path_for(path)
        self._holder = _holder_for(self.lock_path)

    def __enter__(self) -> FileLock:
        holder = self._holder
        holder.guard.acquire()
        if holder.depth == 0:
            try:
                holder.handle = self._acquire()
            except BaseException:
                holder.guard.release()
                raise
        holder.depth += 1
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        holder = self._holder
        holder.depth -= 1
        try:
            if holder.depth == 0 and holder.handle is not None:
                try:
                    fcntl.flock(holder.handle.fileno(), fcntl.LOCK_UN)
                finally:
                    holder.handle.close()
                    holder.handle = None
        finally:
            holder.guard.release()

    def _acquire(self) -> IO[str]:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        handle = self.lock_path.open("a+")
        while True:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                return handle
            except OSError as e:
                if e.errno != errno.EINTR:
                    handle.close()
                    raise
