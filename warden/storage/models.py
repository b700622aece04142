from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IdentityStatus(str, Enum):
    ACTIVE = "active"
    LOCKED = "locked"
    DISABLED = "disabled"


class IdentityKind(str, Enum):
    """Human users and service-to-service callers share one identity model."""

    USER = "user"
    SERVICE = "service"


class TenantStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class AuditOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class AuditSeverity(str, Enum):
    INFO = "info"
    ELEVATED = "elevated"


@dataclass
class Tenant:
    id: str
    status: TenantStatus = TenantStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Identity:
    id: str
    tenant_id: str
    identifier: str
    credential_hash: str
    status: IdentityStatus = IdentityStatus.ACTIVE
    capabilities: Tuple[str, ...] = ()
    version: int = 1
    kind: IdentityKind = IdentityKind.USER
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == IdentityStatus.ACTIVE


@dataclass
class ClientFingerprint:
    ip: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class Session:
    """One refresh-token lineage.

    Only the hash of the current refresh token is kept on the record; hashes
    superseded by rotation stay indexed by the store so replays can be traced
    back to their lineage.
    """

    id: str
    identity_id: str
    tenant_id: str
    issued_at: datetime
    expires_at: datetime
    refresh_token_hash: str
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    last_seen_ip: Optional[str] = None
    last_seen_agent: Optional[str] = None
    last_seen_at: Optional[datetime] = None
    rotation_count: int = 0

    @classmethod
    def new(
        cls,
        identity_id: str,
        tenant_id: str,
        refresh_token_hash: str,
        *,
        issued_at: datetime,
        ttl_minutes: int,
        fingerprint: Optional[ClientFingerprint] = None,
    ) -> "Session":
        fingerprint = fingerprint or ClientFingerprint()
        return cls(
            id=str(uuid.uuid4()),
            identity_id=identity_id,
            tenant_id=tenant_id,
            issued_at=issued_at,
            expires_at=issued_at + timedelta(minutes=ttl_minutes),
            refresh_token_hash=refresh_token_hash,
            last_seen_ip=fingerprint.ip,
            last_seen_agent=fingerprint.user_agent,
            last_seen_at=issued_at,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass(frozen=True)
class AuditEvent:
    id: str
    tenant_id: str
    actor_id: Optional[str]
    action: str
    resource_type: Optional[str]
    resource_id: Optional[str]
    metadata: Dict[str, Any]
    timestamp: datetime
    outcome: AuditOutcome = AuditOutcome.SUCCESS
    severity: AuditSeverity = AuditSeverity.INFO

    @classmethod
    def new(
        cls,
        *,
        tenant_id: str,
        action: str,
        actor_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        outcome: AuditOutcome = AuditOutcome.SUCCESS,
        severity: AuditSeverity = AuditSeverity.INFO,
        timestamp: Optional[datetime] = None,
    ) -> "AuditEvent":
        return cls(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            actor_id=actor_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            metadata=dict(metadata or {}),
            timestamp=timestamp or utcnow(),
            outcome=AuditOutcome(outcome),
            severity=AuditSeverity(severity),
        )


@dataclass(frozen=True)
class IdentitySnapshot:
    """The slice of an identity the authorization path reads through the cache."""

    tenant_id: str
    identity_id: str
    status: IdentityStatus
    capabilities: Tuple[str, ...]
    version: int
    kind: IdentityKind = IdentityKind.USER

    @classmethod
    def from_identity(cls, identity: Identity) -> "IdentitySnapshot":
        return cls(
            tenant_id=identity.tenant_id,
            identity_id=identity.id,
            status=identity.status,
            capabilities=tuple(identity.capabilities),
            version=identity.version,
            kind=identity.kind,
        )

    @property
    def is_active(self) -> bool:
        return self.status == IdentityStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "identity_id": self.identity_id,
            "status": self.status.value,
            "capabilities": list(self.capabilities),
            "version": self.version,
            "kind": self.kind.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IdentitySnapshot":
        return cls(
            tenant_id=data["tenant_id"],
            identity_id=data["identity_id"],
            status=IdentityStatus(data["status"]),
            capabilities=tuple(data.get("capabilities") or ()),
            version=int(data["version"]),
            kind=IdentityKind(data.get("kind", IdentityKind.USER.value)),
        )


@dataclass(frozen=True)
class SessionSnapshot:
    session_id: str
    identity_id: str
    tenant_id: str
    revoked: bool
    expires_at: datetime

    @classmethod
    def from_session(cls, session: Session) -> "SessionSnapshot":
        return cls(
            session_id=session.id,
            identity_id=session.identity_id,
            tenant_id=session.tenant_id,
            revoked=session.revoked,
            expires_at=session.expires_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "identity_id": self.identity_id,
            "tenant_id": self.tenant_id,
            "revoked": self.revoked,
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionSnapshot":
        expires_at = datetime.fromisoformat(data["expires_at"])
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return cls(
            session_id=data["session_id"],
            identity_id=data["identity_id"],
            tenant_id=data["tenant_id"],
            revoked=bool(data["revoked"]),
            expires_at=expires_at,
        )
