from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from warden.logging import get_correlation_id
from warden.service.permissions import Decision
from warden.service.tokens import Claims
from warden.storage.models import Identity

# Maximum nesting of client-supplied metadata
MAX_JSON_DEPTH = 10
MAX_ARRAY_ITEMS = 500

_VALID_ERROR_CODES = {
    "invalid_credential",
    "locked",
    "not_found",
    "expired",
    "revoked",
    "malformed",
    "bad_signature",
    "stale_permissions",
    "tenant_mismatch",
    "timeout",
    "reuse_detected",
    "invalid_token",
    "unauthorized",
    "forbidden",
    "tenant_suspended",
    "validation_error",
    "conflict",
    "server_error",
}


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize so visually identical identifiers compare equal."""
    return unicodedata.normalize("NFKC", value)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(success|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class LoginRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=256)
    secret: str = Field(..., min_length=1, max_length=1024)

    @field_validator("identifier")
    @classmethod
    def _normalize_identifier(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    session_id: str
    identity_id: str
    tenant_id: str


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class ClaimsResponse(BaseModel):
    identity_id: str
    tenant_id: str
    session_id: str
    capabilities: List[str]
    version: int
    issued_at: datetime
    expires_at: datetime

    @classmethod
    def from_claims(cls, claims: Claims) -> "ClaimsResponse":
        return cls(
            identity_id=claims.identity_id,
            tenant_id=claims.tenant_id,
            session_id=claims.session_id,
            capabilities=list(claims.capabilities),
            version=claims.version,
            issued_at=claims.issued_at,
            expires_at=claims.expires_at,
        )


class AuthorizeRequest(BaseModel):
    capability: str = Field(..., min_length=1, max_length=256)
    resource_tenant_id: Optional[str] = Field(default=None, max_length=128)
    resource_type: Optional[str] = Field(default=None, max_length=128)
    resource_id: Optional[str] = Field(default=None, max_length=256)


class DecisionResponse(BaseModel):
    allowed: bool
    reason: Optional[str] = None

    @classmethod
    def from_decision(cls, decision: Decision) -> "DecisionResponse":
        return cls(
            allowed=decision.allowed,
            reason=decision.reason.value if decision.reason else None,
        )


class ActivityRequest(BaseModel):
    action: str = Field(..., min_length=1, max_length=128)
    tenant_id: Optional[str] = Field(default=None, max_length=128)
    resource_type: Optional[str] = Field(default=None, max_length=128)
    resource_id: Optional[str] = Field(default=None, max_length=256)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    outcome: Literal["success", "failure"] = "success"

    @field_validator("metadata")
    @classmethod
    def _validate_metadata(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        _validate_json_depth(value)
        return value


class ActivityResponse(BaseModel):
    event_id: str


class IdentityCreateRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=256)
    secret: str = Field(..., min_length=8, max_length=1024)
    capabilities: List[str] = Field(default_factory=list, max_length=MAX_ARRAY_ITEMS)
    kind: Literal["user", "service"] = "user"

    @field_validator("identifier")
    @classmethod
    def _normalize_identifier(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class CapabilityRequest(BaseModel):
    capability: str = Field(..., min_length=1, max_length=256)


class StatusRequest(BaseModel):
    status: Literal["active", "locked", "disabled"]


class IdentityResponse(BaseModel):
    id: str
    tenant_id: str
    identifier: str
    status: str
    kind: str
    capabilities: List[str]
    version: int

    @classmethod
    def from_identity(cls, identity: Identity) -> "IdentityResponse":
        return cls(
            id=identity.id,
            tenant_id=identity.tenant_id,
            identifier=identity.identifier,
            status=identity.status.value,
            kind=identity.kind.value,
            capabilities=list(identity.capabilities),
            version=identity.version,
        )


class SecretChangeRequest(BaseModel):
    current_secret: str = Field(..., min_length=1, max_length=1024)
    new_secret: str = Field(..., min_length=8, max_length=1024)


class LogoutResponse(BaseModel):
    revoked: bool


class LogoutAllResponse(BaseModel):
    sessions_revoked: int
