# max_express_bot/core/engine/keyed_locks.py
"""
Per-key mutual exclusion for asyncio.

Each key gets its own ``asyncio.Lock`` on first use. The entry is dropped as
soon as nobody holds or waits for it, so the pool only grows with the number
of users that are active right now.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0  # holders + waiters


class KeyedLockPool:
    """Lazily created, self-evicting locks keyed by any hashable value."""

    def __init__(self) -> None:
        self._entries: dict[Hashable, _Entry] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        """
        Hold the lock for ``key`` for the duration of the block.

        Waiters for the same key are served in the order they arrived
        (``asyncio.Lock`` is FIFO). Different keys never block each other.
        """
        entry = self._entries.get(key)
        if entry is None:
            entry = _Entry()
            self._entries[key] = entry
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._entries.get(key) is entry:
                del self._entries[key]

    def is_locked(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        return len(self._entries)
