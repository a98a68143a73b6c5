from __future__ import annotations

import threading
import time
import weakref
from contextlib import contextmanager
from typing import Iterator, Optional

from plugmarket.exceptions import OperationCancelledError, StepTimeoutError


class InstallationLocks:
    """
    Per-key re-entrant mutexes.

    Keys are installation ids (or ``publish:<listing id>`` for catalog
    writes). Re-entrancy lets the update pipeline call back into the lifecycle
    while it holds the installation's lock. A key's lock lives only as long as
    someone references it.
    """

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[str, threading.RLock]" = (
            weakref.WeakValueDictionary()
        )
        self._guard = threading.Lock()

    def __len__(self) -> int:
        return len(self._locks)

    def get(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self.get(key)
        with lock:
            yield


_default_locks = InstallationLocks()


def default_locks() -> InstallationLocks:
    return _default_locks


class CancellationToken:
    """Cooperative cancellation flag checked between pipeline steps."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class Deadline:
    def __init__(self, timeout_s: Optional[float]) -> None:
        self.timeout_s = timeout_s if timeout_s and timeout_s > 0 else None
        self._expires = time.monotonic() + self.timeout_s if self.timeout_s else None

    def remaining(self, default: float) -> float:
        if self._expires is None:
            return default
        return max(min(default, self._expires - time.monotonic()), 0.001)

    @property
    def expired(self) -> bool:
        return self._expires is not None and time.monotonic() >= self._expires


def checkpoint(step: str, cancel: Optional[CancellationToken], deadline: Deadline) -> None:
    if cancel is not None and cancel.cancelled:
        raise OperationCancelledError(f"Update cancelled before step '{step}'")
    if deadline.expired:
        raise StepTimeoutError(
            f"Update exceeded its {deadline.timeout_s:g}s deadline before step '{step}'"
        )
