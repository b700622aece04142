import json
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import psycopg
import pytest

from warden.storage.errors import ConstraintViolation, StoreUnavailable
from warden.storage.memory import MemoryStore
from warden.storage.models import (
    AuditEvent,
    AuditOutcome,
    AuditSeverity,
    IdentityKind,
    IdentitySnapshot,
    IdentityStatus,
    Session,
    SessionSnapshot,
    TenantStatus,
)
from warden.storage.postgres import PostgresStore
from warden.storage.redis_cache import RedisCache

NOW = datetime(2030, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def memory_store():
    store = MemoryStore()
    store.create_tenant("acme")
    return store


def _session(store, identity, digest="h1"):
    return store.create_session(
        Session.new(identity.id, identity.tenant_id, digest, issued_at=NOW, ttl_minutes=60)
    )


def test_memory_store_identity_constraints(memory_store):
    memory_store.create_identity("acme", "alice", "hash")
    with pytest.raises(ConstraintViolation):
        memory_store.create_identity("acme", "alice", "hash")
    with pytest.raises(ConstraintViolation):
        memory_store.create_identity("missing", "alice", "hash")
    with pytest.raises(ConstraintViolation):
        memory_store.create_tenant("acme")


def test_memory_store_returns_copies(memory_store):
    identity = memory_store.create_identity("acme", "alice", "hash", capabilities=["a:b"])
    identity.capabilities = ("x:y",)
    assert memory_store.get_identity("acme", identity.id).capabilities == ("a:b",)


def test_memory_store_scopes_identities_by_tenant(memory_store):
    memory_store.create_tenant("globex")
    identity = memory_store.create_identity("acme", "alice", "hash")
    assert memory_store.get_identity("globex", identity.id) is None
    assert memory_store.update_identity_capabilities("globex", identity.id, ["a:b"]) is None


def test_memory_store_mutations_bump_version(memory_store):
    identity = memory_store.create_identity("acme", "alice", "hash")
    updated = memory_store.update_identity_capabilities("acme", identity.id, ["a:b", "a:b"])
    assert updated.capabilities == ("a:b",)
    assert updated.version == 2
    locked = memory_store.set_identity_status("acme", identity.id, IdentityStatus.LOCKED)
    assert locked.version == 3
    rehashed = memory_store.set_credential_hash("acme", identity.id, "new-hash")
    assert rehashed.version == 3


def test_memory_store_rotation_keeps_lineage(memory_store):
    identity = memory_store.create_identity("acme", "alice", "hash")
    session = _session(memory_store, identity)

    assert memory_store.rotate_refresh_hash(session.id, "wrong", "h2", None, NOW) is None
    rotated = memory_store.rotate_refresh_hash(session.id, "h1", "h2", None, NOW)
    assert rotated.rotation_count == 1

    old, old_current = memory_store.find_session_by_refresh_hash("h1")
    new, new_current = memory_store.find_session_by_refresh_hash("h2")
    assert old.id == new.id == session.id
    assert (old_current, new_current) == (False, True)

    assert memory_store.revoke_session(session.id, NOW) is True
    assert memory_store.rotate_refresh_hash(session.id, "h2", "h3", None, NOW) is None


def test_memory_store_delete_expired_drops_index(memory_store):
    identity = memory_store.create_identity("acme", "alice", "hash")
    session = _session(memory_store, identity)
    assert memory_store.delete_expired_sessions(NOW + timedelta(minutes=61)) == 1
    assert memory_store.get_session(session.id) is None
    assert memory_store.find_session_by_refresh_hash("h1") is None


def test_memory_store_audit_filters(memory_store):
    events = [
        AuditEvent.new(tenant_id="acme", action="a", actor_id="u1"),
        AuditEvent.new(tenant_id="acme", action="b", actor_id="u2"),
        AuditEvent.new(tenant_id="globex", action="a", actor_id="u1"),
    ]
    memory_store.append_audit_events(events)
    assert [e.id for e in memory_store.list_audit_events("acme")] == [events[0].id, events[1].id]
    assert [e.id for e in memory_store.list_audit_events("acme", action="a")] == [events[0].id]
    assert [e.id for e in memory_store.list_audit_events("acme", actor_id="u2")] == [
        events[1].id
    ]


def test_snapshots_survive_json(memory_store):
    identity = memory_store.create_identity(
        "acme", "svc", "hash", capabilities=["a:b"], kind=IdentityKind.SERVICE
    )
    snapshot = IdentitySnapshot.from_identity(identity)
    assert IdentitySnapshot.from_dict(json.loads(json.dumps(snapshot.to_dict()))) == snapshot

    session = _session(memory_store, identity)
    session_snapshot = SessionSnapshot.from_session(session)
    restored = SessionSnapshot.from_dict(json.loads(json.dumps(session_snapshot.to_dict())))
    assert restored == session_snapshot


class FailingPool:
    @contextmanager
    def connection(self, timeout=None):
        raise psycopg.OperationalError("connection refused")
        yield


def _bare_postgres_store() -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://localhost/warden"
    store.connect_timeout = 0.1
    store.logger = MemoryStore().logger
    store.pool = FailingPool()
    return store


def test_postgres_unavailable_maps_to_store_unavailable():
    store = _bare_postgres_store()
    with pytest.raises(StoreUnavailable):
        store.verify_connection()
    with pytest.raises(StoreUnavailable):
        store.get_tenant("acme")


def test_postgres_row_mappers():
    tenant = PostgresStore._tenant_from_row(
        {"id": "acme", "status": "suspended", "created_at": NOW}
    )
    assert tenant.status == TenantStatus.SUSPENDED

    identity = PostgresStore._identity_from_row(
        {
            "id": "6f1c",
            "tenant_id": "acme",
            "identifier": "alice",
            "credential_hash": "hash",
            "status": "locked",
            "capabilities": ["a:b"],
            "version": 7,
            "kind": None,
            "created_at": NOW,
            "updated_at": NOW,
        }
    )
    assert identity.status == IdentityStatus.LOCKED
    assert identity.capabilities == ("a:b",)
    assert identity.kind == IdentityKind.USER

    session = PostgresStore._session_from_row(
        {
            "id": "s1",
            "identity_id": "6f1c",
            "tenant_id": "acme",
            "issued_at": NOW,
            "expires_at": NOW,
            "refresh_token_hash": "h",
            "revoked": False,
            "rotation_count": None,
        }
    )
    assert session.rotation_count == 0

    event = PostgresStore._audit_from_row(
        {
            "id": "e1",
            "tenant_id": "acme",
            "action": "audit.overflow",
            "metadata": '{"dropped": 3}',
            "occurred_at": NOW,
            "outcome": "failure",
            "severity": "elevated",
        }
    )
    assert event.metadata == {"dropped": 3}
    assert event.outcome == AuditOutcome.FAILURE
    assert event.severity == AuditSeverity.ELEVATED


class FakeRedisClient:
    def __init__(self, data):
        self.data = data

    async def get(self, key):
        return self.data.get(key)

    async def delete(self, *keys):
        return sum(1 for key in keys if self.data.pop(key, None) is not None)


async def test_redis_cache_drops_corrupt_entries():
    cache: RedisCache = RedisCache.__new__(RedisCache)
    key = RedisCache.identity_key("acme", "id-1")
    cache.client = FakeRedisClient({key: "{not json", "list": "[1, 2]"})

    assert await cache.get_json(key) is None
    assert key not in cache.client.data
    assert await cache.get_json("list") is None
    assert await cache.delete() == 0


def test_redis_keys_are_tenant_scoped():
    assert RedisCache.identity_key("acme", "id-1") == "warden:identity:acme:id-1"
    assert RedisCache.identity_key("globex", "id-1") != RedisCache.identity_key("acme", "id-1")
    assert RedisCache.session_key("s1") == "warden:session:s1"
