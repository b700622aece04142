from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from warden.config import Settings
from warden.logging import get_logger
from warden.service.audit import AuditRecorder
from warden.service.clock import Clock, SystemClock
from warden.service.credentials import CredentialVerifier
from warden.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialError,
    LockedError,
    NotFoundError,
    StalePermissionsError,
    ValidationError,
)
from warden.service.locks import KeyedLock
from warden.service.permissions import (
    Decision,
    DenyReason,
    PermissionEvaluator,
    validate_capability,
)
from warden.service.retry import run_io
from warden.service.sessions import SessionRegistry
from warden.service.tenancy import TenantGuard
from warden.service.tokens import Claims, TokenCodec
from warden.storage.errors import ConstraintViolation
from warden.storage.layered_cache import DistributedCache, LayeredCache
from warden.storage.models import (
    AuditEvent,
    AuditOutcome,
    ClientFingerprint,
    Identity,
    IdentityKind,
    IdentityStatus,
)

logger = get_logger(__name__)

ADMIN_CAPABILITY = "identities:admin"
MIN_SECRET_LENGTH = 8


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    session_id: str
    identity_id: str
    tenant_id: str
    expires_in: int
    token_type: str = "bearer"


class GatewayFacade:
    """Single entry point composing verification, tokens, sessions and policy.

    Every operation that carries claims authenticates the access token against
    a live session and passes through the tenant guard before doing anything.
    """

    def __init__(
        self,
        *,
        store: Any,
        cache: LayeredCache,
        codec: TokenCodec,
        credentials: CredentialVerifier,
        sessions: SessionRegistry,
        permissions: PermissionEvaluator,
        guard: TenantGuard,
        audit: AuditRecorder,
        settings: Settings,
        io_timeout: float = 2.0,
    ) -> None:
        self.store = store
        self.cache = cache
        self.codec = codec
        self.credentials = credentials
        self.sessions = sessions
        self.permissions = permissions
        self.guard = guard
        self.audit = audit
        self.settings = settings
        self.io_timeout = io_timeout

    @classmethod
    def build(
        cls,
        store: Any,
        settings: Settings,
        *,
        distributed: Optional[DistributedCache] = None,
        clock: Optional[Clock] = None,
        credentials_kwargs: Optional[Dict[str, Any]] = None,
    ) -> "GatewayFacade":
        """Wire every component from ``settings`` around one store and cache."""
        clock = clock or SystemClock()
        io = {
            "io_timeout": settings.io_timeout_seconds,
            "io_backoff": settings.io_retry_backoff_seconds,
        }
        locks = KeyedLock()
        cache = LayeredCache(
            store,
            distributed,
            max_entries=settings.local_cache_max_entries,
            local_ttl_seconds=settings.local_cache_ttl_seconds,
            distributed_ttl_seconds=settings.distributed_cache_ttl_seconds,
            **io,
        )
        audit = AuditRecorder(
            store,
            capacity=settings.audit_buffer_capacity,
            batch_size=settings.audit_batch_size,
            max_retries=settings.audit_max_retries,
            retry_base_seconds=settings.audit_retry_base_seconds,
            retry_max_seconds=settings.audit_retry_max_seconds,
            poll_interval=settings.audit_poll_interval_seconds,
            io_timeout=settings.io_timeout_seconds,
        )
        codec = TokenCodec(
            settings.jwt_secret or "",
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl_minutes=settings.access_token_ttl_minutes,
            clock_skew_seconds=settings.clock_skew_seconds,
            clock=clock,
        )
        credentials = CredentialVerifier(
            store,
            cache,
            audit,
            locks=locks,
            lockout_threshold=settings.lockout_threshold,
            lockout_window_seconds=settings.lockout_window_seconds,
            clock=clock,
            **io,
            **(credentials_kwargs or {}),
        )
        sessions = SessionRegistry(
            store,
            cache,
            codec,
            audit,
            locks=locks,
            clock=clock,
            refresh_ttl_minutes=settings.refresh_token_ttl_minutes,
            retention_grace_minutes=settings.session_retention_grace_minutes,
            **io,
        )
        permissions = PermissionEvaluator(store, cache, audit, locks=locks, **io)
        return cls(
            store=store,
            cache=cache,
            codec=codec,
            credentials=credentials,
            sessions=sessions,
            permissions=permissions,
            guard=TenantGuard(audit),
            audit=audit,
            settings=settings,
            io_timeout=settings.io_timeout_seconds,
        )

    # lifecycle
    async def start(self) -> None:
        await self.audit.start()

    async def stop(self) -> None:
        await self.audit.stop()

    async def run_maintenance(self) -> Dict[str, int]:
        swept = await self.sessions.sweep_expired()
        retried = await self.cache.retry_pending_invalidations()
        return {"sessions_swept": swept, "invalidations_retried": retried}

    # helpers
    def _token_pair(
        self, access_token: str, refresh_token: str, session_id: str, identity: Identity
    ) -> TokenPair:
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            session_id=session_id,
            identity_id=identity.id,
            tenant_id=identity.tenant_id,
            expires_in=int(self.codec.access_ttl.total_seconds()),
        )

    async def _authenticate(self, access_token: str) -> Claims:
        claims = self.codec.parse_access_token(access_token)
        await self.sessions.require_live(claims)
        return claims

    async def _require(
        self, claims: Claims, capability: str, tenant_id: str, *, action: str
    ) -> None:
        """Guard the tenant boundary then insist on ``capability``."""
        crossing = self.guard.check(claims, tenant_id, action=action)
        decision = await self.permissions.authorize(claims, capability)
        if not decision.allowed:
            raise self._denial_error(decision)
        if crossing:
            self.guard.record_crossing(claims, tenant_id, action=action)

    @staticmethod
    def _denial_error(decision: Decision) -> Exception:
        if decision.reason == DenyReason.STALE_PERMISSIONS:
            return StalePermissionsError("permissions changed since token issuance")
        if decision.reason == DenyReason.IDENTITY_INACTIVE:
            return LockedError("identity is not active")
        if decision.reason == DenyReason.UNKNOWN_IDENTITY:
            return AuthenticationError("identity no longer exists")
        return ForbiddenError(
            "missing required capability",
            detail={"reason": decision.reason.value if decision.reason else None},
        )

    # operations
    async def login(
        self,
        tenant_id: str,
        identifier: str,
        secret: str,
        fingerprint: Optional[ClientFingerprint] = None,
    ) -> TokenPair:
        try:
            identity = await self.credentials.verify(tenant_id, identifier, secret)
        except NotFoundError:
            # Same answer as a wrong secret so identifiers cannot be enumerated
            raise InvalidCredentialError("invalid credentials")
        session, refresh_token = await self.sessions.create(identity, fingerprint)
        access_token = self.codec.issue_access_token(identity, session.id)
        self.audit.record(
            AuditEvent.new(
                tenant_id=identity.tenant_id,
                action="auth.login",
                actor_id=identity.id,
                resource_type="session",
                resource_id=session.id,
                metadata={"ip": fingerprint.ip if fingerprint else None},
            )
        )
        logger.info(
            "login_succeeded",
            tenant_id=tenant_id,
            identity_id=identity.id,
            session_id=session.id,
        )
        return self._token_pair(access_token, refresh_token, session.id, identity)

    async def verify(self, access_token: str, *, tenant_id: Optional[str] = None) -> Claims:
        """Validate a token end to end: signature, expiry, live session and version."""
        claims = await self._authenticate(access_token)
        snapshot = await self.cache.get_identity(claims.tenant_id, claims.identity_id)
        if snapshot is None:
            raise AuthenticationError("identity no longer exists")
        if not snapshot.is_active:
            raise LockedError("identity is not active")
        if snapshot.version != claims.version:
            raise StalePermissionsError("permissions changed since token issuance")
        if tenant_id is not None:
            self.guard.enforce(claims, tenant_id, action="auth.verify")
        return claims

    async def refresh(
        self,
        refresh_token: str,
        fingerprint: Optional[ClientFingerprint] = None,
        *,
        tenant_id: Optional[str] = None,
    ) -> TokenPair:
        rotation = await self.sessions.rotate(refresh_token, fingerprint, tenant_id=tenant_id)
        return self._token_pair(
            rotation.access_token, rotation.refresh_token, rotation.session.id, rotation.identity
        )

    async def logout(self, access_token: str, *, tenant_id: Optional[str] = None) -> bool:
        """Revoke the token's session. Repeating it is a successful no-op."""
        claims = self.codec.parse_access_token(access_token, verify_expiry=False)
        if tenant_id is not None:
            self.guard.enforce(claims, tenant_id, action="auth.logout")
        changed = await self.sessions.revoke(claims.session_id)
        if changed:
            self.audit.record(
                AuditEvent.new(
                    tenant_id=claims.tenant_id,
                    action="auth.logout",
                    actor_id=claims.identity_id,
                    resource_type="session",
                    resource_id=claims.session_id,
                )
            )
        return changed

    async def logout_all(self, access_token: str, *, tenant_id: Optional[str] = None) -> int:
        claims = await self._authenticate(access_token)
        if tenant_id is not None:
            self.guard.enforce(claims, tenant_id, action="auth.logout_all")
        revoked = await self.sessions.revoke_all(claims.tenant_id, claims.identity_id)
        self.audit.record(
            AuditEvent.new(
                tenant_id=claims.tenant_id,
                action="auth.logout_all",
                actor_id=claims.identity_id,
                resource_type="identity",
                resource_id=claims.identity_id,
                metadata={"sessions_revoked": len(revoked)},
            )
        )
        return len(revoked)

    async def authorize(
        self,
        access_token: str,
        capability: str,
        *,
        resource_tenant_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> Decision:
        claims = await self._authenticate(access_token)
        target_tenant = resource_tenant_id or claims.tenant_id
        crossing = self.guard.check(claims, target_tenant, action=capability)
        decision = await self.permissions.authorize(claims, capability)
        if crossing and decision.allowed:
            self.guard.record_crossing(
                claims,
                target_tenant,
                action=capability,
                resource_type=resource_type,
                resource_id=resource_id,
            )
        return decision

    async def record_activity(
        self,
        access_token: str,
        *,
        action: str,
        tenant_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        outcome: AuditOutcome = AuditOutcome.SUCCESS,
    ) -> str:
        claims = await self.verify(access_token)
        target_tenant = tenant_id or claims.tenant_id
        self.guard.enforce(
            claims,
            target_tenant,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
        )
        event = AuditEvent.new(
            tenant_id=target_tenant,
            action=action,
            actor_id=claims.identity_id,
            resource_type=resource_type,
            resource_id=resource_id,
            metadata=metadata,
            outcome=outcome,
        )
        self.audit.record(event)
        return event.id

    async def register_identity(
        self,
        access_token: str,
        *,
        tenant_id: str,
        identifier: str,
        secret: str,
        capabilities: Iterable[str] = (),
        kind: IdentityKind = IdentityKind.USER,
    ) -> Identity:
        claims = await self._authenticate(access_token)
        await self._require(claims, ADMIN_CAPABILITY, tenant_id, action="identity.register")
        caps = tuple(validate_capability(c) for c in capabilities)
        identity = await self._create_identity(
            tenant_id, identifier, secret, capabilities=caps, kind=kind
        )
        self.audit.record(
            AuditEvent.new(
                tenant_id=tenant_id,
                action="identity.registered",
                actor_id=claims.identity_id,
                resource_type="identity",
                resource_id=identity.id,
                metadata={"kind": identity.kind.value, "capabilities": list(caps)},
            )
        )
        return identity

    async def _create_identity(
        self,
        tenant_id: str,
        identifier: str,
        secret: str,
        *,
        capabilities: Iterable[str],
        kind: IdentityKind,
    ) -> Identity:
        if not identifier or not identifier.strip():
            raise ValidationError("identifier is required")
        if len(secret) < MIN_SECRET_LENGTH:
            raise ValidationError(f"secret must be at least {MIN_SECRET_LENGTH} characters")
        credential_hash = self.credentials.hash_secret(secret)

        def _create() -> Identity:
            return self.store.create_identity(
                tenant_id,
                identifier.strip(),
                credential_hash,
                capabilities=tuple(capabilities),
                kind=kind,
            )

        try:
            return await run_io(
                _create, timeout=self.io_timeout, operation="create_identity", idempotent=False
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail)

    async def grant(
        self, access_token: str, *, tenant_id: str, identity_id: str, capability: str
    ) -> Identity:
        claims = await self._authenticate(access_token)
        await self._require(claims, ADMIN_CAPABILITY, tenant_id, action="capability.grant")
        return await self.permissions.grant(
            tenant_id, identity_id, capability, actor_id=claims.identity_id
        )

    async def revoke(
        self, access_token: str, *, tenant_id: str, identity_id: str, capability: str
    ) -> Identity:
        claims = await self._authenticate(access_token)
        await self._require(claims, ADMIN_CAPABILITY, tenant_id, action="capability.revoke")
        return await self.permissions.revoke(
            tenant_id, identity_id, capability, actor_id=claims.identity_id
        )

    async def set_status(
        self,
        access_token: str,
        *,
        tenant_id: str,
        identity_id: str,
        status: IdentityStatus,
    ) -> Identity:
        claims = await self._authenticate(access_token)
        await self._require(claims, ADMIN_CAPABILITY, tenant_id, action="identity.set_status")
        identity = await self.permissions.set_status(
            tenant_id, identity_id, status, actor_id=claims.identity_id
        )
        if not identity.is_active:
            await self.sessions.revoke_all(tenant_id, identity_id)
        return identity

    async def change_secret(
        self,
        access_token: str,
        *,
        current_secret: str,
        new_secret: str,
        tenant_id: Optional[str] = None,
    ) -> int:
        """Replace the caller's secret and end every one of their sessions."""
        claims = await self.verify(access_token)
        if tenant_id is not None:
            self.guard.enforce(claims, tenant_id, action="identity.change_secret")
        if len(new_secret) < MIN_SECRET_LENGTH:
            raise ValidationError(f"secret must be at least {MIN_SECRET_LENGTH} characters")
        identity = await run_io(
            self.store.get_identity,
            claims.tenant_id,
            claims.identity_id,
            timeout=self.io_timeout,
            operation="load_identity",
        )
        if identity is None:
            raise AuthenticationError("identity no longer exists")
        try:
            await self.credentials.verify(claims.tenant_id, identity.identifier, current_secret)
        except NotFoundError:
            raise InvalidCredentialError("invalid credentials")
        await run_io(
            self.store.set_credential_hash,
            claims.tenant_id,
            claims.identity_id,
            self.credentials.hash_secret(new_secret),
            timeout=self.io_timeout,
            operation="set_credential_hash",
            idempotent=False,
        )
        revoked = await self.sessions.revoke_all(claims.tenant_id, claims.identity_id)
        self.audit.record(
            AuditEvent.new(
                tenant_id=claims.tenant_id,
                action="identity.secret_changed",
                actor_id=claims.identity_id,
                resource_type="identity",
                resource_id=claims.identity_id,
                metadata={"sessions_revoked": len(revoked)},
                outcome=AuditOutcome.SUCCESS,
            )
        )
        return len(revoked)
