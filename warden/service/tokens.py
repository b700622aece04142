from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Tuple

from warden.logging import get_logger
from warden.service.clock import Clock, SystemClock
from warden.service.errors import BadSignatureError, ExpiredError, MalformedTokenError
from warden.storage.models import Identity

logger = get_logger(__name__)

_REQUIRED_CLAIMS = ("sub", "tid", "caps", "ver", "sid", "iat", "exp", "jti")


@dataclass(frozen=True)
class Claims:
    identity_id: str
    tenant_id: str
    capabilities: Tuple[str, ...]
    version: int
    session_id: str
    issued_at: datetime
    expires_at: datetime
    jti: str


class TokenCodec:
    """Issues and parses HS256 access tokens and opaque refresh tokens.

    The codec holds only immutable configuration; every method is safe to call
    concurrently without locking.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl_minutes: int = 10,
        clock_skew_seconds: int = 30,
        clock: Optional[Clock] = None,
    ) -> None:
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = timedelta(minutes=access_ttl_minutes)
        self.leeway = timedelta(seconds=clock_skew_seconds)
        self.clock = clock or SystemClock()

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def issue_access_token(self, identity: Identity, session_id: str) -> str:
        now = self.clock.now()
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": identity.id,
            "tid": identity.tenant_id,
            "caps": list(identity.capabilities),
            "ver": identity.version,
            "sid": session_id,
            "iat": int(now.timestamp()),
            "exp": int((now + self.access_ttl).timestamp()),
            "jti": str(uuid.uuid4()),
            "typ": "access",
        }
        header_enc = self._encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    @staticmethod
    def issue_refresh_token() -> str:
        return secrets.token_urlsafe(48)

    def hash_refresh_token(self, token: str) -> str:
        """Keyed digest of a refresh token; the only form that is ever persisted."""
        return hmac.new(self._secret, token.encode(), hashlib.sha256).hexdigest()

    def parse_access_token(self, token: str, *, verify_expiry: bool = True) -> Claims:
        if not isinstance(token, str) or token.count(".") != 2:
            raise MalformedTokenError("access token is malformed")
        header_b64, payload_b64, sig_b64 = token.split(".")

        # Pin the algorithm before looking at the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            raise MalformedTokenError("access token header is malformed")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise MalformedTokenError("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not sig_b64.isascii() or not hmac.compare_digest(expected_sig, sig_b64):
            raise BadSignatureError("access token signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            raise MalformedTokenError("access token payload is malformed")
        if not isinstance(payload, dict) or payload.get("typ") != "access":
            raise MalformedTokenError("not an access token")
        if any(name not in payload for name in _REQUIRED_CLAIMS):
            raise MalformedTokenError("access token is missing claims")

        if payload.get("iss") != self.issuer or not self._audience_ok(payload.get("aud")):
            raise BadSignatureError("access token was not issued for this service")

        claims = self._claims_from_payload(payload)
        if verify_expiry and claims.expires_at <= self.clock.now() - self.leeway:
            raise ExpiredError("access token expired")
        return claims

    def _audience_ok(self, aud: Any) -> bool:
        if isinstance(aud, str):
            return aud == self.audience
        if isinstance(aud, list):
            return self.audience in aud
        return False

    @staticmethod
    def _claims_from_payload(payload: dict[str, Any]) -> Claims:
        caps = payload["caps"]
        if not isinstance(caps, list) or not all(isinstance(c, str) for c in caps):
            raise MalformedTokenError("capability claim is malformed")
        try:
            return Claims(
                identity_id=str(payload["sub"]),
                tenant_id=str(payload["tid"]),
                capabilities=tuple(caps),
                version=int(payload["ver"]),
                session_id=str(payload["sid"]),
                issued_at=datetime.fromtimestamp(float(payload["iat"]), tz=timezone.utc),
                expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
                jti=str(payload["jti"]),
            )
        except (TypeError, ValueError, OverflowError, OSError):
            raise MalformedTokenError("access token claims are malformed")
