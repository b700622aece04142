import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="warden_test_")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Tests run against the process-local cache layer unless a fake is injected
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402
from redis.exceptions import ConnectionError as RedisConnectionError  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from warden.config import Settings  # noqa: E402
from warden.service.gateway import ADMIN_CAPABILITY, GatewayFacade  # noqa: E402
from warden.service.runtime import reset_runtime_for_tests  # noqa: E402
from warden.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "correct-horse-battery"
TEST_JWT_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


class ManualClock:
    """Clock the tests move by hand."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


class FakeDistributedCache:
    """In-memory stand-in for RedisCache that can be switched into failure."""

    def __init__(self):
        self.data: dict[str, dict] = {}
        self.fail = False
        self.deletes: list[str] = []

    def _check(self):
        if self.fail:
            raise RedisConnectionError("distributed cache unreachable")

    async def get_json(self, key):
        self._check()
        return self.data.get(key)

    async def set_json(self, key, value, ttl_seconds):
        self._check()
        self.data[key] = value

    async def delete(self, *keys):
        self._check()
        self.deletes.extend(keys)
        return sum(1 for key in keys if self.data.pop(key, None) is not None)


def fast_hasher() -> PasswordHasher:
    """Argon2id with minimal cost parameters so tests stay quick."""
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_JWT_SECRET,
        use_memory_store=True,
        test_mode=True,
        redis_url="",
        access_token_ttl_minutes=10,
        refresh_token_ttl_minutes=60,
        clock_skew_seconds=0,
        lockout_threshold=3,
        lockout_window_seconds=600,
        session_retention_grace_minutes=30,
        io_timeout_seconds=1.0,
        io_retry_backoff_seconds=0.0,
        audit_buffer_capacity=1000,
        audit_max_retries=2,
        audit_retry_base_seconds=0.0,
        audit_retry_max_seconds=0.0,
        audit_poll_interval_seconds=0.01,
    )


@pytest.fixture
def store():
    memory_store = MemoryStore()
    memory_store.create_tenant("acme")
    memory_store.create_tenant("globex")
    return memory_store


@pytest.fixture
def distributed():
    return FakeDistributedCache()


@pytest.fixture
def gateway(store, settings, clock, distributed):
    return GatewayFacade.build(
        store,
        settings,
        distributed=distributed,
        clock=clock,
        credentials_kwargs={"hasher": fast_hasher()},
    )


@pytest.fixture
def make_identity(gateway):
    """Factory creating identities straight in the store with a real argon2 hash."""

    def _make(tenant_id, identifier, capabilities=(), secret=TEST_SECRET, **kwargs):
        return gateway.store.create_identity(
            tenant_id,
            identifier,
            gateway.credentials.hash_secret(secret),
            capabilities=tuple(capabilities),
            **kwargs,
        )

    return _make


@pytest.fixture
def alice(make_identity):
    return make_identity("acme", "alice@acme", ["reports:read"])


@pytest.fixture
def admin(make_identity):
    return make_identity("acme", "admin@acme", [ADMIN_CAPABILITY])
