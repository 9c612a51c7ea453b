"""Per-key asyncio locks for serializing compound operations inside one process."""

import asyncio
from contextlib import asynccontextmanager
from typing import Dict


class KeyLocks:
    """
    Lazily created asyncio.Lock per key.

    Cross-process safety comes from KeyValueStore.update; these locks only
    stop tasks in the same process from interleaving multi-step sequences
    (e.g. a verification pass racing a license activation).
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, key: str):
        async with self.get(key):
            yield
