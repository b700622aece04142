from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, List, Optional, Tuple

from warden.logging import get_logger
from warden.service.audit import AuditRecorder
from warden.service.clock import Clock, SystemClock
from warden.service.errors import (
    ExpiredError,
    InvalidTokenError,
    LockedError,
    ReuseDetectedError,
    RevokedError,
    TenantMismatchError,
    TenantSuspendedError,
)
from warden.service.locks import KeyedLock, identity_key
from warden.service.retry import run_io
from warden.service.tokens import Claims, TokenCodec
from warden.storage.layered_cache import LayeredCache
from warden.storage.models import (
    AuditEvent,
    AuditOutcome,
    AuditSeverity,
    ClientFingerprint,
    Identity,
    Session,
    SessionSnapshot,
    TenantStatus,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class Rotation:
    session: Session
    identity: Identity
    access_token: str
    refresh_token: str


class SessionRegistry:
    """Owns refresh-token sessions: creation, rotation, revocation and retention.

    Only keyed hashes of refresh tokens reach the store. Every hash a session
    has ever used stays indexed, so presenting a superseded token is detected
    as replay and tears the whole lineage down.
    """

    def __init__(
        self,
        store: Any,
        cache: LayeredCache,
        codec: TokenCodec,
        audit: AuditRecorder,
        *,
        locks: Optional[KeyedLock] = None,
        clock: Optional[Clock] = None,
        refresh_ttl_minutes: int = 60 * 24 * 7,
        retention_grace_minutes: int = 60 * 24,
        io_timeout: float = 2.0,
        io_backoff: float = 0.05,
    ) -> None:
        self.store = store
        self.cache = cache
        self.codec = codec
        self.audit = audit
        self.locks = locks or KeyedLock()
        self.clock = clock or SystemClock()
        self.refresh_ttl_minutes = refresh_ttl_minutes
        self.retention_grace = timedelta(minutes=retention_grace_minutes)
        self.io_timeout = io_timeout
        self.io_backoff = io_backoff

    async def _read(self, func, *args: Any, operation: str) -> Any:
        return await run_io(
            func, *args, timeout=self.io_timeout, operation=operation, backoff=self.io_backoff
        )

    async def _write(self, func, *args: Any, operation: str) -> Any:
        return await run_io(
            func, *args, timeout=self.io_timeout, operation=operation, idempotent=False
        )

    async def create(
        self, identity: Identity, fingerprint: Optional[ClientFingerprint] = None
    ) -> Tuple[Session, str]:
        refresh_token = self.codec.issue_refresh_token()
        session = Session.new(
            identity.id,
            identity.tenant_id,
            self.codec.hash_refresh_token(refresh_token),
            issued_at=self.clock.now(),
            ttl_minutes=self.refresh_ttl_minutes,
            fingerprint=fingerprint,
        )
        stored = await self._write(self.store.create_session, session, operation="create_session")
        logger.info(
            "session_created",
            tenant_id=identity.tenant_id,
            identity_id=identity.id,
            session_id=stored.id,
        )
        return stored, refresh_token

    async def _lookup(self, refresh_hash: str) -> Tuple[Session, bool]:
        found = await self._read(
            self.store.find_session_by_refresh_hash, refresh_hash, operation="find_session"
        )
        if found is None:
            raise InvalidTokenError("refresh token not recognized")
        return found

    def _check_usable(self, session: Session) -> None:
        if session.revoked:
            raise RevokedError("session has been revoked")
        if session.is_expired(self.clock.now()):
            raise ExpiredError("session has expired")

    async def resolve(self, refresh_token: str) -> Session:
        """Look up the session a refresh token belongs to, without side effects."""
        session, current = await self._lookup(self.codec.hash_refresh_token(refresh_token))
        self._check_usable(session)
        if not current:
            raise ReuseDetectedError("refresh token was already rotated")
        return session

    async def rotate(
        self,
        refresh_token: str,
        fingerprint: Optional[ClientFingerprint] = None,
        *,
        tenant_id: Optional[str] = None,
    ) -> Rotation:
        """Swap the presented refresh token for a new one and mint an access token.

        Must not be retried blindly: a second attempt with the same token is
        indistinguishable from replay and revokes the session.
        """
        presented_hash = self.codec.hash_refresh_token(refresh_token)
        session, _ = await self._lookup(presented_hash)
        if tenant_id is not None and session.tenant_id != tenant_id:
            raise TenantMismatchError("refresh token belongs to another tenant")

        async with self.locks.hold(identity_key(session.tenant_id, session.identity_id)):
            # Re-read under the lock; a concurrent rotation may have won
            session, current = await self._lookup(presented_hash)
            self._check_usable(session)
            if not current:
                await self._tear_down(session, reason="superseded_token")
                raise ReuseDetectedError("refresh token reuse detected")

            identity = await self._read(
                self.store.get_identity,
                session.tenant_id,
                session.identity_id,
                operation="load_identity",
            )
            if identity is None or not identity.is_active:
                await self._revoke_unlocked(session.id)
                raise LockedError("identity is not active")
            tenant = await self._read(
                self.store.get_tenant, session.tenant_id, operation="load_tenant"
            )
            if tenant is None or tenant.status != TenantStatus.ACTIVE:
                raise TenantSuspendedError("tenant is suspended")

            new_token = self.codec.issue_refresh_token()
            rotated = await self._write(
                self.store.rotate_refresh_hash,
                session.id,
                presented_hash,
                self.codec.hash_refresh_token(new_token),
                fingerprint,
                self.clock.now(),
                operation="rotate_refresh",
            )
            if rotated is None:
                # Another node swapped the hash first
                await self._tear_down(session, reason="lost_rotation_race")
                raise ReuseDetectedError("refresh token reuse detected")

        logger.info(
            "session_rotated",
            tenant_id=rotated.tenant_id,
            session_id=rotated.id,
            rotation_count=rotated.rotation_count,
        )
        return Rotation(
            session=rotated,
            identity=identity,
            access_token=self.codec.issue_access_token(identity, rotated.id),
            refresh_token=new_token,
        )

    async def _tear_down(self, session: Session, *, reason: str) -> None:
        await self._revoke_unlocked(session.id)
        logger.warning(
            "session_reuse_detected",
            tenant_id=session.tenant_id,
            identity_id=session.identity_id,
            session_id=session.id,
            reason=reason,
        )
        self.audit.record(
            AuditEvent.new(
                tenant_id=session.tenant_id,
                action="session.reuse_detected",
                actor_id=session.identity_id,
                resource_type="session",
                resource_id=session.id,
                metadata={"reason": reason, "rotation_count": session.rotation_count},
                outcome=AuditOutcome.FAILURE,
                severity=AuditSeverity.ELEVATED,
            )
        )

    async def _revoke_unlocked(self, session_id: str) -> bool:
        changed = await self._read(
            self.store.revoke_session, session_id, self.clock.now(), operation="revoke_session"
        )
        await self.cache.invalidate_session(session_id)
        return changed

    async def revoke(self, session_id: str) -> bool:
        """Revoke one session; True only when this call changed its state."""
        session = await self._read(self.store.get_session, session_id, operation="load_session")
        if session is None:
            return False
        async with self.locks.hold(identity_key(session.tenant_id, session.identity_id)):
            changed = await self._revoke_unlocked(session_id)
        if changed:
            logger.info("session_revoked", tenant_id=session.tenant_id, session_id=session_id)
        return changed

    async def revoke_all(self, tenant_id: str, identity_id: str) -> List[str]:
        async with self.locks.hold(identity_key(tenant_id, identity_id)):
            revoked = await self._read(
                self.store.revoke_identity_sessions,
                tenant_id,
                identity_id,
                self.clock.now(),
                operation="revoke_identity_sessions",
            )
            for session_id in revoked:
                await self.cache.invalidate_session(session_id)
        logger.info(
            "identity_sessions_revoked",
            tenant_id=tenant_id,
            identity_id=identity_id,
            count=len(revoked),
        )
        return revoked

    async def require_live(self, claims: Claims) -> SessionSnapshot:
        """Fail unless the session behind ``claims`` is still live."""
        snapshot = await self.cache.get_session(claims.session_id)
        if (
            snapshot is None
            or snapshot.revoked
            or snapshot.identity_id != claims.identity_id
            or snapshot.tenant_id != claims.tenant_id
        ):
            raise RevokedError("session has been revoked")
        if snapshot.expires_at <= self.clock.now():
            raise ExpiredError("session has expired")
        return snapshot

    async def sweep_expired(self) -> int:
        """Physically remove sessions whose expiry is older than the retention grace."""
        cutoff = self.clock.now() - self.retention_grace
        removed = await self._read(
            self.store.delete_expired_sessions, cutoff, operation="sweep_sessions"
        )
        if removed:
            logger.info("expired_sessions_swept", count=removed, cutoff=cutoff.isoformat())
        return removed
