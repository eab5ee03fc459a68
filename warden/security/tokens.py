"""Security layer — Bearer token issue and verification.

Signed JWT access tokens carrying the subject id, username, issue time and
expiry.  Verification failures map onto ``AuthenticationError`` reasons:

  - no credential           → MISSING
  - bad signature / format  → INVALID
  - past ``exp``            → EXPIRED

Usage::

    tokens = TokenService.from_settings(settings)
    token, expires_in = tokens.issue(principal)
    claims = tokens.verify(token)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import jwt

from warden.exceptions import AuthenticationError, AuthenticationFailure, ConfigurationError
from warden.security.models import Principal

if TYPE_CHECKING:
    from warden.config import Settings

CLAIM_SUB = "sub"
CLAIM_USERNAME = "username"
CLAIM_IAT = "iat"
CLAIM_EXP = "exp"
CLAIM_TYP = "typ"
TOKEN_TYPE_ACCESS = "access"


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    username: str
    issued_at: int
    expires_at: int


def extract_bearer(authorization: str | None) -> str | None:
    """Extract the token from an ``Authorization: Bearer <token>`` header value."""
    if not authorization:
        return None
    parts = authorization.strip().split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    token = parts[1].strip()
    return token or None


class TokenService:
    """HMAC-signed access tokens."""

    def __init__(
        self,
        secret: str | None,
        *,
        algorithm: str = "HS256",
        ttl_minutes: int = 60 * 24,
    ) -> None:
        self._secret = secret or None
        self._algorithm = algorithm
        self._ttl_minutes = ttl_minutes

    @classmethod
    def from_settings(cls, settings: "Settings") -> "TokenService":
        secret = settings.auth.jwt_secret
        return cls(
            secret.get_secret_value() if secret is not None else None,
            algorithm=settings.auth.algorithm,
            ttl_minutes=settings.auth.access_ttl_minutes,
        )

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_minutes * 60

    def issue(self, principal: Principal, *, now: datetime | None = None) -> tuple[str, int]:
        """Return ``(token, expires_in_seconds)`` for *principal*."""
        secret = self._require_secret()
        now = now or datetime.now(timezone.utc)
        expires_in = self.ttl_seconds
        payload: dict[str, object] = {
            CLAIM_SUB: principal.user_id,
            CLAIM_USERNAME: principal.username,
            CLAIM_IAT: int(now.timestamp()),
            CLAIM_EXP: int((now + timedelta(seconds=expires_in)).timestamp()),
            CLAIM_TYP: TOKEN_TYPE_ACCESS,
        }
        return jwt.encode(payload, secret, algorithm=self._algorithm), expires_in

    def verify(self, token: str | None) -> TokenClaims:
        """Validate signature and expiry of *token*."""
        if not token:
            raise AuthenticationError(AuthenticationFailure.MISSING)
        secret = self._require_secret()
        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[self._algorithm],
                options={"require": [CLAIM_SUB, CLAIM_EXP, CLAIM_IAT]},
            )
        except jwt.ExpiredSignatureError:
            raise AuthenticationError(AuthenticationFailure.EXPIRED) from None
        except jwt.InvalidTokenError:
            raise AuthenticationError(AuthenticationFailure.INVALID) from None

        user_id = payload.get(CLAIM_SUB)
        if not user_id or payload.get(CLAIM_TYP, TOKEN_TYPE_ACCESS) != TOKEN_TYPE_ACCESS:
            raise AuthenticationError(AuthenticationFailure.INVALID)

        return TokenClaims(
            user_id=str(user_id),
            username=str(payload.get(CLAIM_USERNAME, "")),
            issued_at=int(payload[CLAIM_IAT]),
            expires_at=int(payload[CLAIM_EXP]),
        )

    def _require_secret(self) -> str:
        if self._secret is None:
            raise ConfigurationError(
                "No token signing secret configured",
                context={"setting": "auth.jwt_secret", "env": "WARDEN_AUTH__JWT_SECRET"},
            )
        return self._secret
