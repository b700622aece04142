"""Read-through cache for the authorization hot path.

Lookups go process-local LRU -> distributed cache -> store, populating the
faster layers on the way back. Invalidation drops the local entry before
returning and awaits the distributed delete under a timeout; a delete that
fails is parked and retried by maintenance, and reads of a parked key go
straight to the store until it clears.

The local LRU only sees invalidations issued by its own process. When a
distributed layer is shared between nodes, reads skip the local layer so a
peer's revocation is observed on the next lookup.
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Protocol, Set, Tuple, TypeVar

from redis.exceptions import RedisError

from warden.logging import get_logger
from warden.service.retry import run_io
from warden.storage.models import IdentitySnapshot, SessionSnapshot
from warden.storage.redis_cache import RedisCache

logger = get_logger(__name__)

T = TypeVar("T")

DISTRIBUTED_ERRORS: tuple[type[BaseException], ...] = (
    RedisError,
    asyncio.TimeoutError,
    OSError,
)


class DistributedCache(Protocol):
    async def get_json(self, key: str) -> Optional[dict]: ...

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> None: ...

    async def delete(self, *keys: str) -> int: ...


class LocalLRU:
    """Bounded, thread-safe LRU with a per-entry TTL."""

    def __init__(
        self,
        max_entries: int,
        ttl_seconds: float,
        *,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._timer = timer
        self._entries: "OrderedDict[str, Tuple[float, Any]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._timer():
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return value

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            self._entries[key] = (self._timer() + self.ttl_seconds, value)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def pop(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class LayeredCache:
    def __init__(
        self,
        store: Any,
        distributed: Optional[DistributedCache] = None,
        *,
        max_entries: int = 10_000,
        local_ttl_seconds: float = 5.0,
        distributed_ttl_seconds: int = 60,
        io_timeout: float = 2.0,
        io_backoff: float = 0.05,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.distributed = distributed
        self.local = LocalLRU(max_entries, local_ttl_seconds, timer=timer)
        self.distributed_ttl_seconds = distributed_ttl_seconds
        self.io_timeout = io_timeout
        self.io_backoff = io_backoff
        self._generations: Dict[str, int] = {}
        self._pending: Set[str] = set()
        self._lock = threading.Lock()

    @property
    def serves_local(self) -> bool:
        """True when this process sees every invalidation, i.e. no shared layer."""
        return self.distributed is None

    @property
    def pending_invalidations(self) -> Set[str]:
        with self._lock:
            return set(self._pending)

    def _generation(self, key: str) -> int:
        with self._lock:
            return self._generations.get(key, 0)

    def _bump(self, key: str) -> None:
        with self._lock:
            self._generations[key] = self._generations.get(key, 0) + 1
            self.local.pop(key)

    # reads
    async def get_identity(
        self, tenant_id: str, identity_id: str
    ) -> Optional[IdentitySnapshot]:
        def _load() -> Optional[IdentitySnapshot]:
            identity = self.store.get_identity(tenant_id, identity_id)
            return IdentitySnapshot.from_identity(identity) if identity else None

        snapshot = await self._read_through(
            RedisCache.identity_key(tenant_id, identity_id),
            _load,
            IdentitySnapshot.from_dict,
            operation="load_identity",
        )
        # Distributed entries are keyed by tenant; double-check the payload
        if snapshot is not None and snapshot.tenant_id != tenant_id:
            return None
        return snapshot

    async def get_session(self, session_id: str) -> Optional[SessionSnapshot]:
        def _load() -> Optional[SessionSnapshot]:
            session = self.store.get_session(session_id)
            return SessionSnapshot.from_session(session) if session else None

        return await self._read_through(
            RedisCache.session_key(session_id),
            _load,
            SessionSnapshot.from_dict,
            operation="load_session",
        )

    async def _read_through(
        self,
        key: str,
        loader: Callable[[], Optional[T]],
        decode: Callable[[dict], T],
        *,
        operation: str,
    ) -> Optional[T]:
        if self.serves_local:
            cached = self.local.get(key)
            if cached is not None:
                return cached
        generation = self._generation(key)

        value = await self._distributed_get(key, decode)
        from_store = value is None
        if from_store:
            value = await run_io(
                loader, timeout=self.io_timeout, operation=operation, backoff=self.io_backoff
            )
        if value is None:
            return None

        if self._generation(key) != generation:
            # Invalidated while loading; serve the value but do not cache it
            return value
        if self.serves_local:
            self.local.put(key, value)
        if from_store:
            await self._distributed_set(key, value, generation)
        return value

    async def _distributed_get(
        self, key: str, decode: Callable[[dict], T]
    ) -> Optional[T]:
        if self.distributed is None:
            return None
        with self._lock:
            if key in self._pending:
                return None
        try:
            raw = await asyncio.wait_for(self.distributed.get_json(key), self.io_timeout)
        except DISTRIBUTED_ERRORS as exc:
            logger.warning("distributed_cache_read_degraded", key=key, error=type(exc).__name__)
            return None
        if raw is None:
            return None
        try:
            return decode(raw)
        except (KeyError, TypeError, ValueError):
            logger.warning("distributed_cache_entry_invalid", key=key)
            return None

    async def _distributed_set(self, key: str, value: Any, generation: int) -> None:
        if self.distributed is None:
            return
        try:
            await asyncio.wait_for(
                self.distributed.set_json(key, value.to_dict(), self.distributed_ttl_seconds),
                self.io_timeout,
            )
        except DISTRIBUTED_ERRORS as exc:
            logger.warning("distributed_cache_write_failed", key=key, error=type(exc).__name__)
            return
        if self._generation(key) != generation:
            # Lost a race with an invalidation; undo our write
            await self._distributed_delete(key)
            return
        with self._lock:
            # A fresh store value now sits in the distributed layer
            self._pending.discard(key)

    # invalidation
    async def invalidate_identity(self, tenant_id: str, identity_id: str) -> bool:
        return await self._invalidate(RedisCache.identity_key(tenant_id, identity_id))

    async def invalidate_session(self, session_id: str) -> bool:
        return await self._invalidate(RedisCache.session_key(session_id))

    async def _invalidate(self, key: str) -> bool:
        """Drop ``key`` from both layers; False when the distributed delete was deferred."""
        self._bump(key)
        return await self._distributed_delete(key)

    async def _distributed_delete(self, key: str) -> bool:
        if self.distributed is None:
            return True
        try:
            await asyncio.wait_for(self.distributed.delete(key), self.io_timeout)
        except DISTRIBUTED_ERRORS as exc:
            with self._lock:
                self._pending.add(key)
            logger.warning(
                "distributed_invalidation_deferred", key=key, error=type(exc).__name__
            )
            return False
        return True

    async def retry_pending_invalidations(self) -> int:
        """Retry parked distributed deletes; returns how many went through."""
        if self.distributed is None:
            return 0
        with self._lock:
            keys = sorted(self._pending)
            self._pending.clear()
        if not keys:
            return 0
        try:
            await asyncio.wait_for(self.distributed.delete(*keys), self.io_timeout)
        except DISTRIBUTED_ERRORS as exc:
            with self._lock:
                self._pending.update(keys)
            logger.warning(
                "distributed_invalidation_retry_failed",
                pending=len(keys),
                error=type(exc).__name__,
            )
            return 0
        logger.info("distributed_invalidation_retried", count=len(keys))
        return len(keys)
