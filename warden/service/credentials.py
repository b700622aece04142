from __future__ import annotations

import asyncio
import secrets
import threading
from collections import deque
from datetime import timedelta
from typing import Any, Deque, Dict, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from warden.logging import get_logger
from warden.service.audit import AuditRecorder
from warden.service.clock import Clock, SystemClock
from warden.service.errors import (
    InvalidCredentialError,
    LockedError,
    NotFoundError,
    TenantSuspendedError,
)
from warden.service.locks import KeyedLock, identity_key
from warden.service.retry import run_io
from warden.storage.layered_cache import LayeredCache
from warden.storage.models import (
    AuditEvent,
    AuditOutcome,
    Identity,
    IdentityStatus,
    TenantStatus,
)

logger = get_logger(__name__)


class CredentialVerifier:
    """Checks submitted secrets against stored argon2id hashes.

    Consecutive failures are counted per identity over a sliding window; the
    attempt that reaches the threshold locks the identity.
    """

    def __init__(
        self,
        store: Any,
        cache: LayeredCache,
        audit: AuditRecorder,
        *,
        locks: Optional[KeyedLock] = None,
        lockout_threshold: int = 5,
        lockout_window_seconds: int = 15 * 60,
        clock: Optional[Clock] = None,
        hasher: Optional[PasswordHasher] = None,
        io_timeout: float = 2.0,
        io_backoff: float = 0.05,
    ) -> None:
        self.store = store
        self.cache = cache
        self.audit = audit
        self.locks = locks or KeyedLock()
        self.lockout_threshold = lockout_threshold
        self.lockout_window = timedelta(seconds=lockout_window_seconds)
        self.clock = clock or SystemClock()
        self.io_timeout = io_timeout
        self.io_backoff = io_backoff
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        # Verified against when the identity is unknown so timing matches a real check
        self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))
        self._failures: Dict[str, Deque] = {}
        self._failures_lock = threading.Lock()

    def hash_secret(self, secret: str) -> str:
        return self._hasher.hash(secret)

    def _matches(self, stored_hash: str, secret: str) -> bool:
        try:
            return self._hasher.verify(stored_hash, secret)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def failure_count(self, tenant_id: str, identity_id: str) -> int:
        with self._failures_lock:
            return len(self._failures.get(identity_key(tenant_id, identity_id), ()))

    async def verify(self, tenant_id: str, identifier: str, secret: str) -> Identity:
        tenant = await run_io(
            self.store.get_tenant,
            tenant_id,
            timeout=self.io_timeout,
            operation="load_tenant",
            backoff=self.io_backoff,
        )
        identity = None
        if tenant is not None:
            identity = await run_io(
                self.store.get_identity_by_identifier,
                tenant_id,
                identifier,
                timeout=self.io_timeout,
                operation="load_identity",
                backoff=self.io_backoff,
            )
        if identity is None:
            await asyncio.to_thread(self._matches, self._dummy_hash, secret)
            raise NotFoundError("identity not found")
        if tenant.status != TenantStatus.ACTIVE:
            raise TenantSuspendedError("tenant is suspended")
        if not identity.is_active:
            raise LockedError(f"identity is {identity.status.value}")

        if await asyncio.to_thread(self._matches, identity.credential_hash, secret):
            with self._failures_lock:
                self._failures.pop(identity_key(tenant_id, identity.id), None)
            return identity

        await self._record_failure(identity)
        raise InvalidCredentialError("invalid credentials")

    async def _record_failure(self, identity: Identity) -> None:
        key = identity_key(identity.tenant_id, identity.id)
        now = self.clock.now()
        cutoff = now - self.lockout_window
        with self._failures_lock:
            window = self._failures.setdefault(key, deque())
            while window and window[0] <= cutoff:
                window.popleft()
            window.append(now)
            failures = len(window)
            tripped = failures >= self.lockout_threshold
            if tripped:
                self._failures.pop(key, None)
        logger.info(
            "credential_verification_failed",
            tenant_id=identity.tenant_id,
            identity_id=identity.id,
            failures=failures,
        )
        self.audit.record(
            AuditEvent.new(
                tenant_id=identity.tenant_id,
                action="auth.login_failed",
                actor_id=identity.id,
                resource_type="identity",
                resource_id=identity.id,
                metadata={"failures": failures},
                outcome=AuditOutcome.FAILURE,
            )
        )
        if tripped:
            await self._lock_out(identity, failures)

    async def _lock_out(self, identity: Identity, failures: int) -> None:
        async with self.locks.hold(identity_key(identity.tenant_id, identity.id)):
            updated = await run_io(
                self.store.set_identity_status,
                identity.tenant_id,
                identity.id,
                IdentityStatus.LOCKED,
                timeout=self.io_timeout,
                operation="lock_identity",
                idempotent=False,
            )
            await self.cache.invalidate_identity(identity.tenant_id, identity.id)
        logger.warning(
            "identity_locked",
            tenant_id=identity.tenant_id,
            identity_id=identity.id,
            failures=failures,
        )
        self.audit.record(
            AuditEvent.new(
                tenant_id=identity.tenant_id,
                action="identity.locked",
                actor_id=None,
                resource_type="identity",
                resource_id=identity.id,
                metadata={
                    "failures": failures,
                    "window_seconds": int(self.lockout_window.total_seconds()),
                    "version": updated.version if updated else None,
                },
                outcome=AuditOutcome.FAILURE,
            )
        )
