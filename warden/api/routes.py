from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request

from warden.api.schemas import (
    ActivityRequest,
    ActivityResponse,
    AuthorizeRequest,
    CapabilityRequest,
    ClaimsResponse,
    DecisionResponse,
    Envelope,
    IdentityCreateRequest,
    IdentityResponse,
    LoginRequest,
    LogoutAllResponse,
    LogoutResponse,
    RefreshRequest,
    SecretChangeRequest,
    StatusRequest,
    TokenResponse,
)
from warden.logging import get_logger
from warden.service.gateway import TokenPair
from warden.service.runtime import get_runtime
from warden.storage.models import (
    AuditOutcome,
    ClientFingerprint,
    IdentityKind,
    IdentityStatus,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


async def get_bearer_token(authorization: Optional[str] = Header(None)) -> str:
    token = _extract_bearer(authorization)
    if not token:
        raise _http_error("unauthorized", "bearer token required", status_code=401)
    return token


async def get_tenant_id(
    x_tenant_id: Optional[str] = Header(None, convert_underscores=False, alias="X-Tenant-ID"),
) -> str:
    if not x_tenant_id or not x_tenant_id.strip():
        raise _http_error("validation_error", "X-Tenant-ID header required", status_code=400)
    return x_tenant_id.strip()


def _fingerprint(request: Request) -> ClientFingerprint:
    return ClientFingerprint(
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def _token_response(pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
        session_id=pair.session_id,
        identity_id=pair.identity_id,
        tenant_id=pair.tenant_id,
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
):
    """Exchange an identifier and secret for an access/refresh token pair.

    Unknown identifiers and wrong secrets answer identically.
    """
    runtime = get_runtime()
    pair = await runtime.gateway.login(
        tenant_id, body.identifier, body.secret, _fingerprint(request)
    )
    return Envelope(status="success", data=_token_response(pair))


@router.post("/auth/verify", response_model=Envelope, tags=["auth"])
async def verify(
    token: str = Depends(get_bearer_token),
    tenant_id: str = Depends(get_tenant_id),
):
    runtime = get_runtime()
    claims = await runtime.gateway.verify(token, tenant_id=tenant_id)
    return Envelope(status="success", data=ClaimsResponse.from_claims(claims))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    body: RefreshRequest,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
):
    """Rotate a refresh token. Clients must not retry this blindly."""
    runtime = get_runtime()
    pair = await runtime.gateway.refresh(
        body.refresh_token, _fingerprint(request), tenant_id=tenant_id
    )
    return Envelope(status="success", data=_token_response(pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    token: str = Depends(get_bearer_token),
    tenant_id: str = Depends(get_tenant_id),
):
    runtime = get_runtime()
    revoked = await runtime.gateway.logout(token, tenant_id=tenant_id)
    return Envelope(status="success", data=LogoutResponse(revoked=revoked))


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(
    token: str = Depends(get_bearer_token),
    tenant_id: str = Depends(get_tenant_id),
):
    runtime = get_runtime()
    count = await runtime.gateway.logout_all(token, tenant_id=tenant_id)
    return Envelope(status="success", data=LogoutAllResponse(sessions_revoked=count))


@router.post("/auth/authorize", response_model=Envelope, tags=["auth"])
async def authorize(
    body: AuthorizeRequest,
    token: str = Depends(get_bearer_token),
    tenant_id: str = Depends(get_tenant_id),
):
    """Answer allow/deny for one capability; denials are data, not errors."""
    runtime = get_runtime()
    decision = await runtime.gateway.authorize(
        token,
        body.capability,
        resource_tenant_id=body.resource_tenant_id or tenant_id,
        resource_type=body.resource_type,
        resource_id=body.resource_id,
    )
    return Envelope(status="success", data=DecisionResponse.from_decision(decision))


@router.post("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: SecretChangeRequest,
    token: str = Depends(get_bearer_token),
    tenant_id: str = Depends(get_tenant_id),
):
    runtime = get_runtime()
    count = await runtime.gateway.change_secret(
        token,
        current_secret=body.current_secret,
        new_secret=body.new_secret,
        tenant_id=tenant_id,
    )
    return Envelope(status="success", data=LogoutAllResponse(sessions_revoked=count))


@router.post("/audit/activity", response_model=Envelope, tags=["audit"])
async def record_activity(
    body: ActivityRequest,
    token: str = Depends(get_bearer_token),
    tenant_id: str = Depends(get_tenant_id),
):
    runtime = get_runtime()
    event_id = await runtime.gateway.record_activity(
        token,
        action=body.action,
        tenant_id=body.tenant_id or tenant_id,
        resource_type=body.resource_type,
        resource_id=body.resource_id,
        metadata=body.metadata,
        outcome=AuditOutcome(body.outcome),
    )
    return Envelope(status="success", data=ActivityResponse(event_id=event_id))


@router.post("/identities", response_model=Envelope, status_code=201, tags=["identities"])
async def create_identity(
    body: IdentityCreateRequest,
    token: str = Depends(get_bearer_token),
    tenant_id: str = Depends(get_tenant_id),
):
    runtime = get_runtime()
    identity = await runtime.gateway.register_identity(
        token,
        tenant_id=tenant_id,
        identifier=body.identifier,
        secret=body.secret,
        capabilities=body.capabilities,
        kind=IdentityKind(body.kind),
    )
    return Envelope(status="success", data=IdentityResponse.from_identity(identity))


@router.post(
    "/identities/{identity_id}/capabilities/grant",
    response_model=Envelope,
    tags=["identities"],
)
async def grant_capability(
    body: CapabilityRequest,
    identity_id: str = Path(..., max_length=64),
    token: str = Depends(get_bearer_token),
    tenant_id: str = Depends(get_tenant_id),
):
    runtime = get_runtime()
    identity = await runtime.gateway.grant(
        token, tenant_id=tenant_id, identity_id=identity_id, capability=body.capability
    )
    return Envelope(status="success", data=IdentityResponse.from_identity(identity))


@router.post(
    "/identities/{identity_id}/capabilities/revoke",
    response_model=Envelope,
    tags=["identities"],
)
async def revoke_capability(
    body: CapabilityRequest,
    identity_id: str = Path(..., max_length=64),
    token: str = Depends(get_bearer_token),
    tenant_id: str = Depends(get_tenant_id),
):
    runtime = get_runtime()
    identity = await runtime.gateway.revoke(
        token, tenant_id=tenant_id, identity_id=identity_id, capability=body.capability
    )
    return Envelope(status="success", data=IdentityResponse.from_identity(identity))


@router.put("/identities/{identity_id}/status", response_model=Envelope, tags=["identities"])
async def set_identity_status(
    body: StatusRequest,
    identity_id: str = Path(..., max_length=64),
    token: str = Depends(get_bearer_token),
    tenant_id: str = Depends(get_tenant_id),
):
    runtime = get_runtime()
    identity = await runtime.gateway.set_status(
        token,
        tenant_id=tenant_id,
        identity_id=identity_id,
        status=IdentityStatus(body.status),
    )
    return Envelope(status="success", data=IdentityResponse.from_identity(identity))
