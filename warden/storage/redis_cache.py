from __future__ import annotations

import json
from typing import Any, Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper holding JSON snapshots for the distributed cache layer."""

    DEFAULT_OPERATION_TIMEOUT = 2.0
    KEY_PREFIX = "warden"

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @classmethod
    def identity_key(cls, tenant_id: str, identity_id: str) -> str:
        return f"{cls.KEY_PREFIX}:identity:{tenant_id}:{identity_id}"

    @classmethod
    def session_key(cls, session_id: str) -> str:
        return f"{cls.KEY_PREFIX}:session:{session_id}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity with a short-lived synchronous client."""
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get_json(self, key: str) -> Optional[dict]:
        raw = await self.client.get(key)
        if raw is None:
            return None
        try:
            value = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            # Corrupt entry; drop it so the next read repopulates from the store
            await self.client.delete(key)
            return None
        return value if isinstance(value, dict) else None

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        await self.client.set(key, json.dumps(value), ex=max(1, int(ttl_seconds)))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
