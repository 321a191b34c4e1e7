"""Mutual exclusion around mutating control-plane operations."""

from __future__ import annotations

import fcntl
import functools
import logging
import threading
from pathlib import Path
from typing import Any, Callable, IO, Optional, TypeVar

LOG = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


class OperationLock:
    """Re-entrant lock, optionally backed by an ``flock`` on ``path``.

    The thread lock serializes callers inside one process; the file lock
    serializes separate CLI invocations sharing a state directory.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = Path(path) if path else None
        self._lock = threading.RLock()
        self._depth = 0
        self._handle: Optional[IO[str]] = None

    def __enter__(self) -> "OperationLock":
        self._lock.acquire()
        try:
            if self._depth == 0 and self._path is not None:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                handle = open(self._path, "a")
                LOG.debug("Waiting for lock %s", self._path)
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                self._handle = handle
        except BaseException:
            self._lock.release()
            raise
        self._depth += 1
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._depth -= 1
        try:
            if self._depth == 0 and self._handle is not None:
                fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
                self._handle.close()
                self._handle = None
        finally:
            self._lock.release()


def serialized(method: F) -> F:
    """Run a manager method while holding the manager's ``_lock``."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)

    return wrapper  # type: ignore[return-value]
