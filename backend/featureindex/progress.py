from __future__ import annotations

import threading
from typing import Protocol


class ProgressToken(Protocol):
    """
    Progress/cancellation hook polled by long-running index builds.
    """

    def is_active(self) -> bool: ...

    def add_progress(self, n: int) -> None: ...


class Progress:
    """
    Thread-safe progress counter with cooperative cancellation.

    `max` is informational (e.g. the row count to show a percentage); reaching
    it does not cancel anything.
    """

    def __init__(self, max: int | None = None):
        self.max = max
        self._progress = 0
        self._cancelled = threading.Event()
        self._lock = threading.Lock()

    @property
    def progress(self) -> int:
        with self._lock:
            return self._progress

    def is_active(self) -> bool:
        return not self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def add_progress(self, n: int) -> None:
        with self._lock:
            self._progress += int(n)
