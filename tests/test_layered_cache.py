"""Read-through layering, invalidation and degraded distributed behaviour."""

import pytest

from warden.storage.layered_cache import LayeredCache, LocalLRU
from warden.storage.memory import MemoryStore
from warden.storage.models import IdentityStatus
from warden.storage.redis_cache import RedisCache


class FakeTimer:
    def __init__(self):
        self.value = 1000.0

    def __call__(self):
        return self.value


class CountingStore(MemoryStore):
    def __init__(self):
        super().__init__()
        self.identity_reads = 0

    def get_identity(self, tenant_id, identity_id):
        self.identity_reads += 1
        return super().get_identity(tenant_id, identity_id)


@pytest.fixture
def counting_store():
    store = CountingStore()
    store.create_tenant("acme")
    store.create_tenant("globex")
    return store


@pytest.fixture
def timer():
    return FakeTimer()


@pytest.fixture
def cache(counting_store, distributed, timer):
    return LayeredCache(
        counting_store,
        distributed,
        max_entries=100,
        local_ttl_seconds=5.0,
        distributed_ttl_seconds=60,
        io_timeout=1.0,
        io_backoff=0.0,
        timer=timer,
    )


@pytest.fixture
def identity(counting_store):
    return counting_store.create_identity("acme", "alice@acme", "hash", capabilities=["a:b"])


def test_local_lru_evicts_least_recent():
    lru = LocalLRU(2, 60)
    lru.put("a", 1)
    lru.put("b", 2)
    assert lru.get("a") == 1
    lru.put("c", 3)
    assert "b" not in lru
    assert lru.get("a") == 1
    assert lru.get("c") == 3


def test_local_lru_entries_expire():
    timer = FakeTimer()
    lru = LocalLRU(10, 5, timer=timer)
    lru.put("a", 1)
    timer.value += 5
    assert lru.get("a") is None
    assert len(lru) == 0


async def test_reads_populate_distributed_layer(cache, identity, counting_store, distributed):
    key = RedisCache.identity_key("acme", identity.id)

    first = await cache.get_identity("acme", identity.id)
    second = await cache.get_identity("acme", identity.id)

    assert first == second
    assert first.version == identity.version
    assert counting_store.identity_reads == 1
    assert distributed.data[key]["identity_id"] == identity.id
    # A shared layer is configured, so nothing is served from process memory
    assert len(cache.local) == 0


async def test_peer_invalidation_is_seen_on_next_read(cache, identity, counting_store, distributed):
    peer = LayeredCache(counting_store, distributed, io_backoff=0.0)
    await cache.get_identity("acme", identity.id)

    counting_store.update_identity_capabilities("acme", identity.id, [])
    assert await peer.invalidate_identity("acme", identity.id) is True

    snapshot = await cache.get_identity("acme", identity.id)
    assert snapshot.capabilities == ()
    assert snapshot.version == identity.version + 1


async def test_tenant_scoping(cache, identity):
    assert await cache.get_identity("globex", identity.id) is None


async def test_invalidation_is_visible_immediately(cache, identity, counting_store):
    await cache.get_identity("acme", identity.id)
    counting_store.set_identity_status("acme", identity.id, IdentityStatus.LOCKED)

    assert await cache.invalidate_identity("acme", identity.id) is True

    snapshot = await cache.get_identity("acme", identity.id)
    assert snapshot.status == IdentityStatus.LOCKED
    assert snapshot.version == identity.version + 1


async def test_distributed_outage_degrades_to_store(cache, identity, counting_store, distributed):
    distributed.fail = True
    snapshot = await cache.get_identity("acme", identity.id)
    assert snapshot.identity_id == identity.id
    assert counting_store.identity_reads == 1


async def test_failed_distributed_delete_is_parked_and_retried(
    cache, identity, counting_store, distributed
):
    key = RedisCache.identity_key("acme", identity.id)
    await cache.get_identity("acme", identity.id)
    counting_store.update_identity_capabilities("acme", identity.id, ["a:c"])

    distributed.fail = True
    assert await cache.invalidate_identity("acme", identity.id) is False
    assert cache.pending_invalidations == {key}
    distributed.fail = False

    # The stale distributed entry is bypassed while the delete is pending
    snapshot = await cache.get_identity("acme", identity.id)
    assert snapshot.capabilities == ("a:c",)

    # Writing the fresh value back supersedes the parked delete
    assert cache.pending_invalidations == set()
    assert distributed.data[key]["capabilities"] == ["a:c"]
    assert await cache.retry_pending_invalidations() == 0


async def test_retry_keeps_keys_while_distributed_is_down(cache, identity, distributed):
    distributed.fail = True
    await cache.invalidate_session("sess-1")
    assert await cache.retry_pending_invalidations() == 0
    assert cache.pending_invalidations == {RedisCache.session_key("sess-1")}

    distributed.fail = False
    assert await cache.retry_pending_invalidations() == 1
    assert cache.pending_invalidations == set()


async def test_no_distributed_layer(counting_store, identity):
    cache = LayeredCache(counting_store, None, io_backoff=0.0)
    assert (await cache.get_identity("acme", identity.id)).identity_id == identity.id
    assert await cache.invalidate_identity("acme", identity.id) is True
    assert await cache.retry_pending_invalidations() == 0


async def test_single_process_serves_from_local(counting_store, identity, timer):
    cache = LayeredCache(
        counting_store, None, local_ttl_seconds=5.0, io_backoff=0.0, timer=timer
    )
    await cache.get_identity("acme", identity.id)
    await cache.get_identity("acme", identity.id)
    assert counting_store.identity_reads == 1

    timer.value += 6
    await cache.get_identity("acme", identity.id)
    assert counting_store.identity_reads == 2
