from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field


@dataclass
class _Entry:
    lock: threading.RLock = field(default_factory=threading.RLock)
    holders: int = 0


class KeyedLocks:
    """Re-entrant locks keyed by entity id.

    All status-mutating work for one task (or all reputation work for one
    agent) runs while holding that key's lock. Callers that need both take the
    task lock before the agent lock.

    A key's lock exists only while some thread holds or waits on it; the last
    holder to leave removes it, so the map tracks in-flight keys rather than
    every id ever seen.
    """

    def __init__(self, name: str = "locks") -> None:
        self._name = name
        self._guard = threading.Lock()
        self._locks: dict[str, _Entry] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = _Entry()
                self._locks[key] = entry
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0 and self._locks.get(key) is entry:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def __repr__(self) -> str:
        return f"KeyedLocks(name={self._name!r}, keys={len(self)})"
