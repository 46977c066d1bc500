"""Mutual exclusion and cooperative cancellation for engine runs."""
from __future__ import annotations

import contextlib
import threading
from typing import FrozenSet, Iterator, Optional

from .errors import BackupCancelled, BusyError


class CancelToken:
    """Checked at each cancellation point of a run."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self, where: str) -> None:
        if self._event.is_set():
            raise BackupCancelled(f"cancelled before {where}")


class EngineLock:
    """One backup or restore at a time; a second request fails fast with BusyError."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._guard = threading.Lock()
        self._active: Optional[str] = None
        self._restoring: set[str] = set()

    @property
    def active(self) -> Optional[str]:
        with self._guard:
            return self._active

    def restoring_ids(self) -> FrozenSet[str]:
        with self._guard:
            return frozenset(self._restoring)

    @contextlib.contextmanager
    def hold(self, operation: str, *, backup_id: Optional[str] = None) -> Iterator[None]:
        if not self._lock.acquire(blocking=False):
            raise BusyError(f"cannot start {operation}: {self.active or 'another operation'} is running")
        with self._guard:
            self._active = operation
            if operation == "restore" and backup_id:
                self._restoring.add(backup_id)
        try:
            yield
        finally:
            with self._guard:
                self._active = None
                if backup_id:
                    self._restoring.discard(backup_id)
            self._lock.release()


__all__ = ["CancelToken", "EngineLock"]
