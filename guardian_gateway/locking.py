"""Mutual exclusion for escalation state.

``FileLock`` serializes read-modify-write cycles both between threads of one
process (``threading.RLock``) and between processes sharing a state file
(``fcntl.flock`` on a sidecar ``<state>.lock`` file). The flock is advisory:
every writer must go through the same lock.
"""

from __future__ import annotations

import fcntl
import os
import threading
from pathlib import Path
from typing import Optional


class FileLock:
    """Re-entrant exclusive lock scoped to one state file."""

    def __init__(self, state_path: str):
        self.path = str(Path(state_path).with_name(Path(state_path).name + ".lock"))
        self._thread_lock = threading.RLock()
        self._local = threading.local()

    def _depth(self) -> int:
        return getattr(self._local, "depth", 0)

    def acquire(self) -> None:
        self._thread_lock.acquire()
        try:
            if self._depth() == 0:
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
                fd = os.open(self.path, os.O_CREAT | os.O_RDWR, 0o600)
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX)
                except OSError:
                    os.close(fd)
                    raise
                self._local.fd = fd
            self._local.depth = self._depth() + 1
        except BaseException:
            self._thread_lock.release()
            raise

    def release(self) -> None:
        depth = self._depth() - 1
        self._local.depth = depth
        try:
            if depth == 0:
                fd: Optional[int] = getattr(self._local, "fd", None)
                self._local.fd = None
                if fd is not None:
                    try:
                        fcntl.flock(fd, fcntl.LOCK_UN)
                    finally:
                        os.close(fd)
        finally:
            self._thread_lock.release()

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
