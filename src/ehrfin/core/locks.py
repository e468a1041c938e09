"""Per-key asyncio critical sections."""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Hashable


class KeyedLock:
    """Hands out one ``asyncio.Lock`` per key and drops it when unused.

    Several keys can be held at once; they are always acquired in sorted
    order so two holders of overlapping key sets cannot deadlock.
    """

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._waiters: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, *keys: Hashable) -> AsyncIterator[None]:
        ordered = sorted(set(keys), key=repr)
        acquired = []
        try:
            for key in ordered:
                lock = self._locks.setdefault(key, asyncio.Lock())
                self._waiters[key] = self._waiters.get(key, 0) + 1
                try:
                    await lock.acquire()
                except BaseException:
                    self._release_ref(key)
                    raise
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._locks[key].release()
                self._release_ref(key)

    def _release_ref(self, key: Any) -> None:
        self._waiters[key] -= 1
        if not self._waiters[key]:
            del self._waiters[key]
            del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
