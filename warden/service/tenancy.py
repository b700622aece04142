from __future__ import annotations

from typing import Optional

from warden.logging import get_logger
from warden.service.audit import AuditRecorder
from warden.service.errors import TenantMismatchError
from warden.service.permissions import capability_matches
from warden.service.tokens import Claims
from warden.storage.models import AuditEvent, AuditSeverity

logger = get_logger(__name__)

CROSS_TENANT_CAPABILITY = "cross-tenant:admin"


class TenantGuard:
    """Rejects any operation whose resource lives outside the caller's tenant.

    Holders of ``cross-tenant:admin`` may cross, and every crossing is audited
    with elevated severity in the caller's home tenant. Service identities get
    no special treatment.
    """

    def __init__(self, audit: AuditRecorder) -> None:
        self.audit = audit

    def enforce(
        self,
        claims: Claims,
        resource_tenant_id: str,
        *,
        action: str,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> None:
        if self.check(claims, resource_tenant_id, action=action):
            self.record_crossing(
                claims,
                resource_tenant_id,
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
            )

    def check(self, claims: Claims, resource_tenant_id: str, *, action: str) -> bool:
        """Raise on a forbidden crossing; True when a permitted crossing occurs."""
        if resource_tenant_id == claims.tenant_id:
            return False
        if not capability_matches(claims.capabilities, CROSS_TENANT_CAPABILITY):
            logger.warning(
                "tenant_mismatch",
                tenant_id=claims.tenant_id,
                resource_tenant_id=resource_tenant_id,
                identity_id=claims.identity_id,
                action=action,
            )
            raise TenantMismatchError(
                "resource belongs to another tenant",
                detail={"resource_tenant_id": resource_tenant_id},
            )
        return True

    def record_crossing(
        self,
        claims: Claims,
        resource_tenant_id: str,
        *,
        action: str,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> None:
        logger.info(
            "tenant_cross_access",
            tenant_id=claims.tenant_id,
            resource_tenant_id=resource_tenant_id,
            identity_id=claims.identity_id,
            action=action,
        )
        self.audit.record(
            AuditEvent.new(
                tenant_id=claims.tenant_id,
                action="tenant.cross_access",
                actor_id=claims.identity_id,
                resource_type=resource_type,
                resource_id=resource_id,
                metadata={
                    "target_tenant_id": resource_tenant_id,
                    "operation": action,
                    "session_id": claims.session_id,
                },
                severity=AuditSeverity.ELEVATED,
            )
        )
