from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Optional, Tuple

from warden.logging import get_logger
from warden.service.audit import AuditRecorder
from warden.service.errors import NotFoundError, ValidationError
from warden.service.locks import KeyedLock, identity_key
from warden.service.retry import run_io
from warden.service.tokens import Claims
from warden.storage.layered_cache import LayeredCache
from warden.storage.models import AuditEvent, Identity, IdentityStatus

logger = get_logger(__name__)

WILDCARD_ACTION = "*"
_CAPABILITY_RE = re.compile(r"^[a-z0-9][a-z0-9_.-]*:(\*|[a-z0-9][a-z0-9_.-]*)$")


class DenyReason(str, Enum):
    UNKNOWN_IDENTITY = "unknown_identity"
    IDENTITY_INACTIVE = "identity_inactive"
    STALE_PERMISSIONS = "stale_permissions"
    MISSING_CAPABILITY = "missing_capability"
    INVALID_CAPABILITY = "invalid_capability"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[DenyReason] = None

    @classmethod
    def allow(cls) -> "Decision":
        return cls(True)

    @classmethod
    def deny(cls, reason: DenyReason) -> "Decision":
        return cls(False, reason)


def validate_capability(capability: str) -> str:
    """Return ``capability`` if it has the ``resource:action`` shape."""
    if not isinstance(capability, str) or not _CAPABILITY_RE.match(capability):
        raise ValidationError(
            "capability must look like 'resource:action'",
            detail={"capability": capability},
        )
    return capability


def capability_matches(held: Iterable[str], required: str) -> bool:
    """Exact match, or ``resource:*`` covering every action on ``resource``."""
    held = tuple(held)
    if required in held:
        return True
    resource, sep, _ = required.partition(":")
    return bool(sep) and f"{resource}:{WILDCARD_ACTION}" in held


class PermissionEvaluator:
    def __init__(
        self,
        store: Any,
        cache: LayeredCache,
        audit: AuditRecorder,
        *,
        locks: Optional[KeyedLock] = None,
        io_timeout: float = 2.0,
        io_backoff: float = 0.05,
    ) -> None:
        self.store = store
        self.cache = cache
        self.audit = audit
        self.locks = locks or KeyedLock()
        self.io_timeout = io_timeout
        self.io_backoff = io_backoff

    async def authorize(self, claims: Claims, required_capability: str) -> Decision:
        """Decide whether ``claims`` may exercise ``required_capability``.

        The capability check runs against the token's snapshot, but only after
        the live identity version has been confirmed equal to the one embedded
        at issuance. Anything unknown or out of date denies.
        """
        try:
            validate_capability(required_capability)
        except ValidationError:
            return self._deny(claims, required_capability, DenyReason.INVALID_CAPABILITY)

        snapshot = await self.cache.get_identity(claims.tenant_id, claims.identity_id)
        if snapshot is None:
            return self._deny(claims, required_capability, DenyReason.UNKNOWN_IDENTITY)
        if not snapshot.is_active:
            return self._deny(claims, required_capability, DenyReason.IDENTITY_INACTIVE)
        if snapshot.version != claims.version:
            return self._deny(claims, required_capability, DenyReason.STALE_PERMISSIONS)
        if capability_matches(claims.capabilities, required_capability):
            return Decision.allow()
        return self._deny(claims, required_capability, DenyReason.MISSING_CAPABILITY)

    @staticmethod
    def _deny(claims: Claims, capability: str, reason: DenyReason) -> Decision:
        logger.info(
            "authorization_denied",
            tenant_id=claims.tenant_id,
            identity_id=claims.identity_id,
            capability=capability,
            reason=reason.value,
        )
        return Decision.deny(reason)

    async def _load(self, tenant_id: str, identity_id: str) -> Identity:
        identity = await run_io(
            self.store.get_identity,
            tenant_id,
            identity_id,
            timeout=self.io_timeout,
            operation="load_identity",
            backoff=self.io_backoff,
        )
        if identity is None:
            raise NotFoundError("identity not found", detail={"identity_id": identity_id})
        return identity

    async def _replace_capabilities(
        self, identity: Identity, capabilities: Tuple[str, ...]
    ) -> Identity:
        updated = await run_io(
            self.store.update_identity_capabilities,
            identity.tenant_id,
            identity.id,
            capabilities,
            timeout=self.io_timeout,
            operation="update_capabilities",
            idempotent=False,
        )
        if updated is None:
            raise NotFoundError("identity not found", detail={"identity_id": identity.id})
        await self.cache.invalidate_identity(identity.tenant_id, identity.id)
        return updated

    async def grant(
        self,
        tenant_id: str,
        identity_id: str,
        capability: str,
        *,
        actor_id: Optional[str] = None,
    ) -> Identity:
        validate_capability(capability)
        async with self.locks.hold(identity_key(tenant_id, identity_id)):
            identity = await self._load(tenant_id, identity_id)
            if capability in identity.capabilities:
                return identity
            updated = await self._replace_capabilities(
                identity, identity.capabilities + (capability,)
            )
        self._audit_change(updated, "capability.granted", actor_id, {"capability": capability})
        return updated

    async def revoke(
        self,
        tenant_id: str,
        identity_id: str,
        capability: str,
        *,
        actor_id: Optional[str] = None,
    ) -> Identity:
        validate_capability(capability)
        async with self.locks.hold(identity_key(tenant_id, identity_id)):
            identity = await self._load(tenant_id, identity_id)
            if capability not in identity.capabilities:
                return identity
            updated = await self._replace_capabilities(
                identity, tuple(c for c in identity.capabilities if c != capability)
            )
        self._audit_change(updated, "capability.revoked", actor_id, {"capability": capability})
        return updated

    async def set_status(
        self,
        tenant_id: str,
        identity_id: str,
        status: IdentityStatus,
        *,
        actor_id: Optional[str] = None,
    ) -> Identity:
        status = IdentityStatus(status)
        async with self.locks.hold(identity_key(tenant_id, identity_id)):
            identity = await self._load(tenant_id, identity_id)
            if identity.status == status:
                return identity
            updated = await run_io(
                self.store.set_identity_status,
                tenant_id,
                identity_id,
                status,
                timeout=self.io_timeout,
                operation="set_identity_status",
                idempotent=False,
            )
            if updated is None:
                raise NotFoundError("identity not found", detail={"identity_id": identity_id})
            await self.cache.invalidate_identity(tenant_id, identity_id)
        self._audit_change(
            updated,
            "identity.status_changed",
            actor_id,
            {"from": identity.status.value, "to": status.value},
        )
        return updated

    def _audit_change(
        self, identity: Identity, action: str, actor_id: Optional[str], metadata: dict
    ) -> None:
        logger.info(
            action.replace(".", "_"),
            tenant_id=identity.tenant_id,
            identity_id=identity.id,
            version=identity.version,
            actor_id=actor_id,
        )
        self.audit.record(
            AuditEvent.new(
                tenant_id=identity.tenant_id,
                action=action,
                actor_id=actor_id,
                resource_type="identity",
                resource_id=identity.id,
                metadata={**metadata, "version": identity.version},
            )
        )
