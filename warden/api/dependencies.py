"""API layer — FastAPI dependency injection.

The SecurityManager is created once at startup and stored on ``app.state``.
Route guards are built with ``require_permission`` / ``require_role``, which
run the AuthorizationGate against the request's bearer token.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Annotated

from fastapi import Depends, Header, Request

from warden.config import Settings
from warden.exceptions import AuthenticationError, AuthenticationFailure
from warden.logging import bind_request_context
from warden.security.accounts import AccountService
from warden.security.audit import AuditTrail
from warden.security.cipher import SecretCipher
from warden.security.gate import (
    AuthorizationGate,
    PermissionRequirement,
    Requirement,
    RoleRequirement,
)
from warden.security.manager import SecurityManager
from warden.security.models import Principal, RequestContext, Role
from warden.security.tokens import extract_bearer


def get_security(request: Request) -> SecurityManager:
    return request.app.state.security  # type: ignore[no-any-return]


def get_config(request: Request) -> Settings:
    return request.app.state.settings  # type: ignore[no-any-return]


def get_gate(request: Request) -> AuthorizationGate:
    return get_security(request).gate


def get_audit(request: Request) -> AuditTrail:
    return get_security(request).audit


def get_accounts(request: Request) -> AccountService:
    return get_security(request).accounts


def get_cipher(request: Request) -> SecretCipher:
    return get_security(request).cipher


def request_context(request: Request) -> RequestContext:
    """Network origin of *request* for audit records.

    The peer address is used as-is.  Forwarding headers are honoured only
    when uvicorn rewrites the peer for a trusted proxy (``server.trusted_proxies``).
    """
    ip = request.client.host if request.client else "unknown"
    return RequestContext(
        ip=ip or "unknown",
        user_agent=request.headers.get("User-Agent", ""),
        request_id=getattr(request.state, "request_id", None),
        path=request.url.path,
    )


ContextDep = Annotated[RequestContext, Depends(request_context)]


async def current_principal(
    request: Request,
    ctx: ContextDep,
    authorization: Annotated[str | None, Header()] = None,
) -> Principal:
    """Authenticate the bearer token without a permission check."""
    principal = await get_gate(request).authenticate(extract_bearer(authorization), ctx)
    bind_request_context(actor_id=principal.user_id)
    return principal


def _guard(requirement: Requirement) -> Callable[..., Awaitable[Principal]]:
    async def dependency(
        request: Request,
        ctx: ContextDep,
        authorization: Annotated[str | None, Header()] = None,
    ) -> Principal:
        decision = await get_gate(request).authorize(
            extract_bearer(authorization), requirement, ctx
        )
        principal = decision.principal
        if principal is None:
            raise AuthenticationError(AuthenticationFailure.PRINCIPAL_NOT_FOUND)
        bind_request_context(actor_id=principal.user_id)
        return principal

    return dependency


def require_permission(module: str, action: str) -> Callable[..., Awaitable[Principal]]:
    """Dependency factory: the caller must hold ``module.action``."""
    return _guard(PermissionRequirement(module, action))


def require_role(*roles: Role) -> Callable[..., Awaitable[Principal]]:
    """Dependency factory: the caller must hold at least one of *roles*."""
    return _guard(RoleRequirement(frozenset(roles)))


# Shorthand type aliases for route signatures.
SecurityDep = Annotated[SecurityManager, Depends(get_security)]
ConfigDep = Annotated[Settings, Depends(get_config)]
AuditDep = Annotated[AuditTrail, Depends(get_audit)]
AccountsDep = Annotated[AccountService, Depends(get_accounts)]
CipherDep = Annotated[SecretCipher, Depends(get_cipher)]
PrincipalDep = Annotated[Principal, Depends(current_principal)]
AuditReaderDep = Annotated[Principal, Depends(require_permission("audit", "read"))]
AuditExporterDep = Annotated[Principal, Depends(require_permission("audit", "export"))]
AdminDep = Annotated[Principal, Depends(require_role(Role.ADMIN))]
UserReaderDep = Annotated[Principal, Depends(require_permission("users", "read"))]
UserEditorDep = Annotated[Principal, Depends(require_permission("users", "update"))]
SecretWriterDep = Annotated[Principal, Depends(require_permission("passwords", "create"))]
SecretReaderDep = Annotated[Principal, Depends(require_permission("passwords", "decrypt"))]
