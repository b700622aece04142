from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from warden.logging import get_logger
from warden.storage.errors import ConstraintViolation, StoreUnavailable
from warden.storage.models import (
    AuditEvent,
    AuditOutcome,
    AuditSeverity,
    ClientFingerprint,
    Identity,
    IdentityKind,
    IdentityStatus,
    Session,
    Tenant,
    TenantStatus,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS tenant (
        id TEXT PRIMARY KEY,
        status TEXT NOT NULL DEFAULT 'active',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS identity (
        id UUID PRIMARY KEY,
        tenant_id TEXT NOT NULL REFERENCES tenant(id),
        identifier TEXT NOT NULL,
        credential_hash TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'active',
        capabilities TEXT[] NOT NULL DEFAULT '{}',
        version INTEGER NOT NULL DEFAULT 1,
        kind TEXT NOT NULL DEFAULT 'user',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (tenant_id, identifier)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        identity_id UUID NOT NULL REFERENCES identity(id),
        tenant_id TEXT NOT NULL,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        refresh_token_hash TEXT NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        last_seen_ip TEXT,
        last_seen_agent TEXT,
        last_seen_at TIMESTAMPTZ,
        rotation_count INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token_hash (
        token_hash TEXT PRIMARY KEY,
        session_id UUID NOT NULL REFERENCES auth_session(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_event (
        seq BIGSERIAL PRIMARY KEY,
        id UUID NOT NULL UNIQUE,
        tenant_id TEXT NOT NULL,
        actor_id TEXT,
        action TEXT NOT NULL,
        resource_type TEXT,
        resource_id TEXT,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        outcome TEXT NOT NULL,
        severity TEXT NOT NULL,
        occurred_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_identity_idx ON auth_session (tenant_id, identity_id)",
    "CREATE INDEX IF NOT EXISTS audit_event_tenant_idx ON audit_event (tenant_id, seq)",
)


class PostgresStore:
    """Postgres-backed system of record for identities, sessions and audit events."""

    def __init__(self, dsn: str, *, connect_timeout: float = 5.0) -> None:
        self.dsn = dsn
        self.connect_timeout = connect_timeout
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection(timeout=self.connect_timeout) as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.warning("postgres_unavailable", error=type(exc).__name__)
            raise StoreUnavailable("database unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _tenant_from_row(row: Dict[str, Any]) -> Tenant:
        return Tenant(
            id=row["id"], status=TenantStatus(row["status"]), created_at=row["created_at"]
        )

    @staticmethod
    def _identity_from_row(row: Dict[str, Any]) -> Identity:
        return Identity(
            id=str(row["id"]),
            tenant_id=row["tenant_id"],
            identifier=row["identifier"],
            credential_hash=row["credential_hash"],
            status=IdentityStatus(row["status"]),
            capabilities=tuple(row.get("capabilities") or ()),
            version=int(row["version"]),
            kind=IdentityKind(row.get("kind") or IdentityKind.USER.value),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            identity_id=str(row["identity_id"]),
            tenant_id=row["tenant_id"],
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            refresh_token_hash=row["refresh_token_hash"],
            revoked=bool(row["revoked"]),
            revoked_at=row.get("revoked_at"),
            last_seen_ip=row.get("last_seen_ip"),
            last_seen_agent=row.get("last_seen_agent"),
            last_seen_at=row.get("last_seen_at"),
            rotation_count=int(row.get("rotation_count") or 0),
        )

    @staticmethod
    def _audit_from_row(row: Dict[str, Any]) -> AuditEvent:
        metadata = row.get("metadata") or {}
        if isinstance(metadata, str):
            try:
                metadata = json.loads(metadata)
            except json.JSONDecodeError:
                metadata = {}
        return AuditEvent(
            id=str(row["id"]),
            tenant_id=row["tenant_id"],
            actor_id=row.get("actor_id"),
            action=row["action"],
            resource_type=row.get("resource_type"),
            resource_id=row.get("resource_id"),
            metadata=metadata,
            timestamp=row["occurred_at"],
            outcome=AuditOutcome(row["outcome"]),
            severity=AuditSeverity(row["severity"]),
        )

    # tenants
    def create_tenant(
        self, tenant_id: str, *, status: TenantStatus = TenantStatus.ACTIVE
    ) -> Tenant:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO tenant (id, status) VALUES (%s, %s) RETURNING *",
                    (tenant_id, TenantStatus(status).value),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("tenant already exists", {"tenant_id": tenant_id})
        return self._tenant_from_row(row)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tenant WHERE id = %s", (tenant_id,)).fetchone()
        return self._tenant_from_row(row) if row else None

    def set_tenant_status(self, tenant_id: str, status: TenantStatus) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE tenant SET status = %s WHERE id = %s RETURNING *",
                (TenantStatus(status).value, tenant_id),
            ).fetchone()
        return self._tenant_from_row(row) if row else None

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO identity (id, tenant_id, identifier, credential_hash, status, capabilities, kind)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        tenant_id,
                        identifier,
                        credential_hash,
                        IdentityStatus(status).value,
                        list(dict.fromkeys(capabilities)),
                        IdentityKind(kind).value,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("identifier already exists", {"field": "identifier"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
        return self._identity_from_row(row)

    def get_identity(self, tenant_id: str, identity_id: str) -> Optional[Identity]:
        try:
            uuid.UUID(identity_id)
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM identity WHERE id = %s AND tenant_id = %s",
                (identity_id, tenant_id),
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def get_identity_by_identifier(
        self, tenant_id: str, identifier: str
    ) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM identity WHERE tenant_id = %s AND identifier = %s",
                (tenant_id, identifier),
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def update_identity_capabilities(
        self, tenant_id: str, identity_id: str, capabilities: Iterable[str]
    ) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE identity
                SET capabilities = %s, version = version + 1, updated_at = now()
                WHERE id = %s AND tenant_id = %s
                RETURNING *
                """,
                (list(dict.fromkeys(capabilities)), identity_id, tenant_id),
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def set_identity_status(
        self, tenant_id: str, identity_id: str, status: IdentityStatus
    ) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE identity
                SET status = %s, version = version + 1, updated_at = now()
                WHERE id = %s AND tenant_id = %s
                RETURNING *
                """,
                (IdentityStatus(status).value, identity_id, tenant_id),
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def set_credential_hash(
        self, tenant_id: str, identity_id: str, credential_hash: str
    ) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE identity SET credential_hash = %s, updated_at = now()
                WHERE id = %s AND tenant_id = %s
                RETURNING *
                """,
                (credential_hash, identity_id, tenant_id),
            ).fetchone()
        return self._identity_from_row(row) if row else None

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, identity_id, tenant_id, issued_at, expires_at, refresh_token_hash,
                        last_seen_ip, last_seen_agent, last_seen_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.identity_id,
                        session.tenant_id,
                        session.issued_at,
                        session.expires_at,
                        session.refresh_token_hash,
                        session.last_seen_ip,
                        session.last_seen_agent,
                        session.last_seen_at,
                    ),
                )
                conn.execute(
                    "INSERT INTO refresh_token_hash (token_hash, session_id) VALUES (%s, %s)",
                    (session.refresh_token_hash, session.id),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "session identity missing", {"identity_id": session.identity_id}
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh hash already issued", {})
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        try:
            uuid.UUID(session_id)
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def find_session_by_refresh_hash(
        self, refresh_hash: str
    ) -> Optional[Tuple[Session, bool]]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT s.* FROM refresh_token_hash h
                JOIN auth_session s ON s.id = h.session_id
                WHERE h.token_hash = %s
                """,
                (refresh_hash,),
            ).fetchone()
        if not row:
            return None
        session = self._session_from_row(row)
        return session, session.refresh_token_hash == refresh_hash

    def rotate_refresh_hash(
        self,
        session_id: str,
        expected_hash: str,
        new_hash: str,
        fingerprint: Optional[ClientFingerprint],
        now: datetime,
    ) -> Optional[Session]:
        fingerprint = fingerprint or ClientFingerprint()
        with self._connect() as conn:
            # Compare-and-swap: only the caller holding the current hash wins
            row = conn.execute(
                """
                UPDATE auth_session
                SET refresh_token_hash = %s,
                    rotation_count = rotation_count + 1,
                    last_seen_at = %s,
                    last_seen_ip = COALESCE(%s, last_seen_ip),
                    last_seen_agent = COALESCE(%s, last_seen_agent)
                WHERE id = %s AND refresh_token_hash = %s AND NOT revoked
                RETURNING *
                """,
                (new_hash, now, fingerprint.ip, fingerprint.user_agent, session_id, expected_hash),
            ).fetchone()
            if not row:
                return None
            conn.execute(
                "INSERT INTO refresh_token_hash (token_hash, session_id) VALUES (%s, %s)",
                (new_hash, session_id),
            )
        return self._session_from_row(row)

    def revoke_session(self, session_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET revoked = TRUE, revoked_at = %s
                WHERE id = %s AND NOT revoked
                RETURNING id
                """,
                (now, session_id),
            ).fetchone()
        return row is not None

    def revoke_identity_sessions(
        self, tenant_id: str, identity_id: str, now: datetime
    ) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE auth_session SET revoked = TRUE, revoked_at = %s
                WHERE tenant_id = %s AND identity_id = %s AND NOT revoked
                RETURNING id
                """,
                (now, tenant_id, identity_id),
            ).fetchall()
        return [str(row["id"]) for row in rows]

    def delete_expired_sessions(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE expires_at < %s", (cutoff,))
            return cur.rowcount or 0

    # audit
    def append_audit_events(self, events: Sequence[AuditEvent]) -> None:
        if not events:
            return
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.executemany(
                    """
                    INSERT INTO audit_event (id, tenant_id, actor_id, action, resource_type, resource_id,
                        metadata, outcome, severity, occurred_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO NOTHING
                    """,
                    [
                        (
                            event.id,
                            event.tenant_id,
                            event.actor_id,
                            event.action,
                            event.resource_type,
                            event.resource_id,
                            json.dumps(event.metadata, default=str),
                            event.outcome.value,
                            event.severity.value,
                            event.timestamp,
                        )
                        for event in events
                    ],
                )

    def list_audit_events(
        self,
        tenant_id: str,
        *,
        action: Optional[str] = None,
        actor_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        clauses = ["tenant_id = %s"]
        params: List[Any] = [tenant_id]
        if action is not None:
            clauses.append("action = %s")
            params.append(action)
        if actor_id is not None:
            clauses.append("actor_id = %s")
            params.append(actor_id)
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_event WHERE {' AND '.join(clauses)} ORDER BY seq DESC LIMIT %s",
                params,
            ).fetchall()
        return [self._audit_from_row(row) for row in reversed(rows)]
