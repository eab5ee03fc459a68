"""API layer — Request and response schemas.

These are the external API contracts.  They are intentionally separate from
the internal security dataclasses so the wire format can evolve on its own.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from warden.security.models import Role


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """POST /auth/login"""

    username: str = Field(min_length=1, max_length=128)
    password: str = Field(min_length=1, max_length=1024)


class UpdateRolesRequest(BaseModel):
    """PUT /users/{user_id}/roles"""

    roles: list[Role] = Field(min_length=1)


class EncryptRequest(BaseModel):
    """POST /secrets/encrypt"""

    plaintext: str = Field(max_length=64 * 1024)
    resource_id: str | None = Field(
        default=None,
        description="Identifier of the secret being stored, recorded in the audit trail.",
    )


class DecryptRequest(BaseModel):
    """POST /secrets/decrypt"""

    ciphertext: str = Field(min_length=1)
    resource_id: str | None = Field(
        default=None,
        description="Identifier of the stored secret, recorded in the audit trail.",
    )


class PurgeRequest(BaseModel):
    """POST /audit/purge"""

    retention_days: int = Field(default=365, ge=1)


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class PrincipalResponse(BaseModel):
    user_id: str
    username: str
    roles: list[str]
    is_active: bool
    locked_until: float | None = None
    department: str | None = None
    email: str | None = None


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: PrincipalResponse


class MeResponse(BaseModel):
    user: PrincipalResponse
    permissions: dict[str, dict[str, bool]]


class EncryptResponse(BaseModel):
    ciphertext: str


class DecryptResponse(BaseModel):
    plaintext: str


class PurgeResponse(BaseModel):
    deleted: int
    retention_days: int


class UserResponse(BaseModel):
    user_id: str
    username: str
    roles: list[str]
    is_active: bool
    login_attempts: int
    locked_until: float | None = None
    department: str | None = None
    email: str | None = None
    created_at: float | None = None


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float
    audit_events: int | None = None
    secrets_configured: bool
    monitor_enabled: bool


class ErrorResponse(BaseModel):
    error: str
    code: str
    detail: Any | None = None
    request_id: str | None = None
