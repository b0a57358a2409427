from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from tutorbridge.logging import get_logger
from tutorbridge.service.errors import TokenExpiredError, TokenInvalidError

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"

_HEADER = {"alg": "HS256", "typ": "JWT"}


class TokenMalformedError(TokenInvalidError):
    """Signature, structure, algorithm, issuer, audience or type mismatch."""


@dataclass(frozen=True)
class TokenClaims:
    account_id: str
    email: str
    role: str = "user"


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _json_segment(obj: dict[str, Any]) -> str:
    return _encode_segment(json.dumps(obj, separators=(",", ":")).encode())


class TokenCodec:
    """Signs and verifies HS256 JWTs of a single token type.

    Access and refresh tokens each get their own codec with their own secret
    and TTL, and every token carries ``token_type`` so one codec rejects the
    other's tokens even if the secrets were ever misconfigured to match.
    """

    def __init__(
        self,
        secret: str,
        ttl: timedelta,
        *,
        token_type: str,
        issuer: str,
        audience: str,
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        self._secret = secret.encode()
        self.ttl = ttl
        self.token_type = token_type
        self.issuer = issuer
        self.audience = audience

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def issue(self, claims: TokenClaims, *, now: Optional[float] = None) -> IssuedToken:
        issued_at = int(now if now is not None else time.time())
        expires = issued_at + int(self.ttl.total_seconds())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": claims.account_id,
            "email": claims.email,
            "role": claims.role,
            "token_type": self.token_type,
            "jti": str(uuid.uuid4()),
            "iat": issued_at,
            "exp": expires,
        }
        signing_input = f"{_json_segment(_HEADER)}.{_json_segment(payload)}"
        token = f"{signing_input}.{self._sign(signing_input)}"
        return IssuedToken(
            token=token,
            expires_at=datetime.fromtimestamp(expires, tz=timezone.utc),
        )

    def verify(self, token: str, *, now: Optional[float] = None) -> TokenClaims:
        """Return the claims of a valid token.

        Raises ``TokenExpiredError`` only when everything but ``exp`` checks
        out; every other defect raises ``TokenMalformedError``.
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise TokenMalformedError("malformed token")

        try:
            header = json.loads(_decode_segment(header_b64))
        except ValueError:
            raise TokenMalformedError("malformed token header")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", token_type=self.token_type)
            raise TokenMalformedError("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenMalformedError("bad token signature")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except ValueError:
            raise TokenMalformedError("malformed token payload")
        if not isinstance(payload, dict):
            raise TokenMalformedError("malformed token payload")

        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            raise TokenMalformedError("token issuer or audience mismatch")
        if payload.get("token_type") != self.token_type:
            raise TokenMalformedError("wrong token type")
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise TokenMalformedError("token missing subject")

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenMalformedError("token missing expiry")
        current = now if now is not None else time.time()
        if exp_ts <= current:
            raise TokenExpiredError("token expired")

        return TokenClaims(
            account_id=subject,
            email=str(payload.get("email", "")),
            role=str(payload.get("role", "user")),
        )


__all__ = [
    "ACCESS",
    "REFRESH",
    "IssuedToken",
    "TokenClaims",
    "TokenCodec",
    "TokenExpiredError",
    "TokenMalformedError",
]
