"""File lock that keeps two processes from draining the same queue."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import IO, Optional

if os.name == "nt":  # pragma: no cover - Windows specific branch
    import msvcrt
else:  # pragma: no cover - POSIX branch
    import fcntl  # type: ignore[import-not-found]

logger = logging.getLogger(__name__)


class ProcessLock:
    """Non-blocking advisory lock on ``<queue path>.lock``.

    The lock file is left in place on release; only the OS lock matters.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._handle: Optional[IO[bytes]] = None

    @classmethod
    def for_queue(cls, queue_path: Path) -> "ProcessLock":
        queue_path = Path(queue_path)
        return cls(queue_path.with_name(queue_path.name + ".lock"))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._handle is not None

    def try_acquire(self) -> bool:
        if self._handle is not None:
            return True
        self._path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self._path, "a+b")
        try:
            _lock(handle)
        except OSError:
            handle.close()
            logger.debug("Drain lock %s is held by another process", self._path)
            return False
        handle.seek(0)
        handle.truncate()
        handle.write(str(os.getpid()).encode("utf-8"))
        handle.flush()
        self._handle = handle
        return True

    def release(self) -> None:
        handle = self._handle
        if handle is None:
            return
        self._handle = None
        try:
            handle.seek(0)
            _unlock(handle)
        finally:
            handle.close()

    def __enter__(self) -> "ProcessLock":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def _lock(handle: IO[bytes]) -> None:
    if os.name == "nt":  # pragma: no cover - Windows specific branch
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
    else:  # pragma: no cover - POSIX branch
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)


def _unlock(handle: IO[bytes]) -> None:
    if os.name == "nt":  # pragma: no cover - Windows specific branch
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
    else:  # pragma: no cover - POSIX branch
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


__all__ = ["ProcessLock"]
