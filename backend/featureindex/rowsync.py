from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, Hashable


@dataclass
class _Entry:
    done: bool = False
    value: Any = None
    error: BaseException | None = None
    # Callers that still have to read this entry, the fetching one included.
    readers: int = 1
    waiters: int = 0


class RowCache:
    """
    Single-flight guard for feature row fetches, scoped to one table.

    The first caller for an id fetches; callers arriving while that fetch is
    in flight block until it is published and get the same row (or the same
    exception). The entry is dropped once every one of them has read it, so
    nothing is cached between bursts.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cond = threading.Condition(self._lock)
        self._entries: dict[Hashable, _Entry] = {}

    def get_or_fetch(self, key: Hashable, fetch: Callable[[Any], Any]) -> Any:
        with self._cond:
            entry = self._entries.get(key)
            # A published entry only belongs to the callers that were waiting on it.
            if entry is not None and not entry.done:
                entry.readers += 1
                entry.waiters += 1
                while not entry.done:
                    self._cond.wait()
                entry.waiters -= 1
                return self._consume(key, entry)
            entry = _Entry()
            self._entries[key] = entry

        try:
            value = fetch(key)
        except BaseException as e:
            with self._cond:
                entry.error = e
                entry.done = True
                self._cond.notify_all()
                self._release(key, entry)
            raise
        with self._cond:
            entry.value = value
            entry.done = True
            self._cond.notify_all()
            return self._consume(key, entry)

    def _release(self, key: Hashable, entry: _Entry) -> None:
        # Caller holds the lock.
        entry.readers -= 1
        if entry.readers == 0 and self._entries.get(key) is entry:
            del self._entries[key]

    def _consume(self, key: Hashable, entry: _Entry) -> Any:
        self._release(key, entry)
        if entry.error is not None:
            raise entry.error
        return entry.value

    def waiting(self, key: Hashable) -> int:
        with self._lock:
            entry = self._entries.get(key)
            return entry.waiters if entry is not None else 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
