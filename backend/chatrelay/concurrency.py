"""Per-key mutual exclusion for asyncio code.

``KeyedLock`` hands out one ``asyncio.Lock`` per key (conversation id, group
key, ...) and forgets it once nobody holds or waits for it, so the table only
grows with the number of keys that are busy right now.

The lock is re-entrant per task: a coroutine that already holds key ``k`` can
enter ``hold(k)`` again without deadlocking. The message pipeline relies on
this to wrap a store append and the following broadcast in one critical
section while the store takes the same lock internally.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Hashable, Optional


class _Entry:
    __slots__ = ("lock", "owner", "depth", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.owner: Optional[asyncio.Task] = None
        self.depth = 0
        self.users = 0


class KeyedLock:
    """A table of task-reentrant asyncio locks keyed by any hashable."""

    def __init__(self) -> None:
        self._entries: Dict[Hashable, _Entry] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        task = asyncio.current_task()
        entry = self._entries.get(key)

        if entry is not None and entry.owner is task:
            entry.depth += 1
            try:
                yield
            finally:
                entry.depth -= 1
            return

        if entry is None:
            entry = self._entries[key] = _Entry()
        entry.users += 1
        try:
            await entry.lock.acquire()
        except BaseException:
            self._release_user(key, entry)
            raise

        entry.owner = task
        entry.depth = 1
        try:
            yield
        finally:
            entry.owner = None
            entry.depth = 0
            entry.lock.release()
            self._release_user(key, entry)

    def _release_user(self, key: Hashable, entry: _Entry) -> None:
        entry.users -= 1
        if entry.users == 0 and self._entries.get(key) is entry:
            del self._entries[key]

    def is_locked(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        return len(self._entries)
