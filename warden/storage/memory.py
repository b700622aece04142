from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from warden.logging import get_logger
from warden.storage.errors import ConstraintViolation
from warden.storage.models import (
    AuditEvent,
    ClientFingerprint,
    Identity,
    IdentityKind,
    IdentityStatus,
    Session,
    Tenant,
    TenantStatus,
    utcnow,
)


class MemoryStore:
    """In-process system of record for tests and single-node development.

    Records are handed out as copies so callers never mutate stored state
    outside the store's lock.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.tenants: Dict[str, Tenant] = {}
        self.identities: Dict[str, Identity] = {}
        self.sessions: Dict[str, Session] = {}
        # Every refresh hash ever issued, current or superseded, maps to its session
        self.refresh_index: Dict[str, str] = {}
        self.audit_events: List[AuditEvent] = []
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    # tenants
    def create_tenant(
        self, tenant_id: str, *, status: TenantStatus = TenantStatus.ACTIVE
    ) -> Tenant:
        with self._data_lock:
            if tenant_id in self.tenants:
                raise ConstraintViolation("tenant already exists", {"tenant_id": tenant_id})
            tenant = Tenant(id=tenant_id, status=TenantStatus(status))
            self.tenants[tenant_id] = tenant
            return replace(tenant)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            return replace(tenant) if tenant else None

    def set_tenant_status(self, tenant_id: str, status: TenantStatus) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if not tenant:
                return None
            tenant.status = TenantStatus(status)
            return replace(tenant)

    # identities
    def create_identity(
        self,
        tenant_id: str,
        identifier: str,
        credential_hash: str,
        *,
        capabilities: Sequence[str] = (),
        kind: IdentityKind = IdentityKind.USER,
        status: IdentityStatus = IdentityStatus.ACTIVE,
    ) -> Identity:
        with self._data_lock:
            if tenant_id not in self.tenants:
                raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
            if self._find_identity(tenant_id, identifier) is not None:
                raise ConstraintViolation(
                    "identifier already exists", {"field": "identifier"}
                )
            identity = Identity(
                id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                identifier=identifier,
                credential_hash=credential_hash,
                status=IdentityStatus(status),
                capabilities=tuple(dict.fromkeys(capabilities)),
                kind=IdentityKind(kind),
            )
            self.identities[identity.id] = identity
            return replace(identity)

    def _find_identity(self, tenant_id: str, identifier: str) -> Optional[Identity]:
        for identity in self.identities.values():
            if identity.tenant_id == tenant_id and identity.identifier == identifier:
                return identity
        return None

    def _owned_identity(self, tenant_id: str, identity_id: str) -> Optional[Identity]:
        identity = self.identities.get(identity_id)
        if identity is None or identity.tenant_id != tenant_id:
            return None
        return identity

    def get_identity(self, tenant_id: str, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            identity = self._owned_identity(tenant_id, identity_id)
            return replace(identity) if identity else None

    def get_identity_by_identifier(
        self, tenant_id: str, identifier: str
    ) -> Optional[Identity]:
        with self._data_lock:
            identity = self._find_identity(tenant_id, identifier)
            return replace(identity) if identity else None

    def update_identity_capabilities(
        self, tenant_id: str, identity_id: str, capabilities: Iterable[str]
    ) -> Optional[Identity]:
        with self._data_lock:
            identity = self._owned_identity(tenant_id, identity_id)
            if not identity:
                return None
            identity.capabilities = tuple(dict.fromkeys(capabilities))
            identity.version += 1
            identity.updated_at = utcnow()
            return replace(identity)

    def set_identity_status(
        self, tenant_id: str, identity_id: str, status: IdentityStatus
    ) -> Optional[Identity]:
        with self._data_lock:
            identity = self._owned_identity(tenant_id, identity_id)
            if not identity:
                return None
            identity.status = IdentityStatus(status)
            identity.version += 1
            identity.updated_at = utcnow()
            return replace(identity)

    def set_credential_hash(
        self, tenant_id: str, identity_id: str, credential_hash: str
    ) -> Optional[Identity]:
        with self._data_lock:
            identity = self._owned_identity(tenant_id, identity_id)
            if not identity:
                return None
            identity.credential_hash = credential_hash
            identity.updated_at = utcnow()
            return replace(identity)

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            identity = self._owned_identity(session.tenant_id, session.identity_id)
            if identity is None:
                raise ConstraintViolation(
                    "session identity missing", {"identity_id": session.identity_id}
                )
            if session.refresh_token_hash in self.refresh_index:
                raise ConstraintViolation("refresh hash already issued", {})
            stored = replace(session)
            self.sessions[stored.id] = stored
            self.refresh_index[stored.refresh_token_hash] = stored.id
            return replace(stored)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            return replace(session) if session else None

    def find_session_by_refresh_hash(
        self, refresh_hash: str
    ) -> Optional[Tuple[Session, bool]]:
        """Return the owning session and whether ``refresh_hash`` is its current token."""
        with self._data_lock:
            session_id = self.refresh_index.get(refresh_hash)
            session = self.sessions.get(session_id) if session_id else None
            if session is None:
                return None
            return replace(session), session.refresh_token_hash == refresh_hash

    def rotate_refresh_hash(
        self,
        session_id: str,
        expected_hash: str,
        new_hash: str,
        fingerprint: Optional[ClientFingerprint],
        now: datetime,
    ) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if (
                session is None
                or session.revoked
                or session.refresh_token_hash != expected_hash
            ):
                return None
            session.refresh_token_hash = new_hash
            session.rotation_count += 1
            session.last_seen_at = now
            if fingerprint is not None:
                session.last_seen_ip = fingerprint.ip
                session.last_seen_agent = fingerprint.user_agent
            self.refresh_index[new_hash] = session.id
            return replace(session)

    def revoke_session(self, session_id: str, now: datetime) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if session is None or session.revoked:
                return False
            session.revoked = True
            session.revoked_at = now
            return True

    def revoke_identity_sessions(
        self, tenant_id: str, identity_id: str, now: datetime
    ) -> List[str]:
        with self._data_lock:
            revoked: List[str] = []
            for session in self.sessions.values():
                if (
                    session.tenant_id == tenant_id
                    and session.identity_id == identity_id
                    and not session.revoked
                ):
                    session.revoked = True
                    session.revoked_at = now
                    revoked.append(session.id)
            return revoked

    def delete_expired_sessions(self, cutoff: datetime) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.expires_at < cutoff]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                gone = set(stale)
                self.refresh_index = {
                    digest: sid
                    for digest, sid in self.refresh_index.items()
                    if sid not in gone
                }
            return len(stale)

    # audit
    def append_audit_events(self, events: Sequence[AuditEvent]) -> None:
        with self._data_lock:
            self.audit_events.extend(events)

    def list_audit_events(
        self,
        tenant_id: str,
        *,
        action: Optional[str] = None,
        actor_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        with self._data_lock:
            matches = [
                event
                for event in self.audit_events
                if event.tenant_id == tenant_id
                and (action is None or event.action == action)
                and (actor_id is None or event.actor_id == actor_id)
            ]
            return matches[-limit:] if limit else matches
