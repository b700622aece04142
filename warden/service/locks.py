"""Per-key async mutual exclusion.

Mutations on one identity are serialized while unrelated identities never
contend on a shared lock. Entries are reference counted and removed once no
coroutine holds or waits on them, so the table stays proportional to the
number of identities currently being mutated.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Tuple


class KeyedLock:
    def __init__(self) -> None:
        self._locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock, refs = self._locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[key] = (lock, refs + 1)
        try:
            async with lock:
                yield
        finally:
            current, refs = self._locks[key]
            if refs <= 1:
                self._locks.pop(key, None)
            else:
                self._locks[key] = (current, refs - 1)

    def __len__(self) -> int:
        return len(self._locks)


def identity_key(tenant_id: str, identity_id: str) -> str:
    return f"{tenant_id}:{identity_id}"
