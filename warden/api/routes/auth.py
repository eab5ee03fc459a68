"""POST /auth/login, POST /auth/logout, GET /auth/me"""

from __future__ import annotations

from fastapi import APIRouter, status

from warden.api.dependencies import AccountsDep, ContextDep, PrincipalDep, SecurityDep
from warden.api.schemas import LoginRequest, LoginResponse, MeResponse, PrincipalResponse

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=LoginResponse, summary="Exchange credentials for a token")
async def login(body: LoginRequest, accounts: AccountsDep, ctx: ContextDep) -> LoginResponse:
    result = await accounts.login(body.username, body.password, ctx)
    return LoginResponse(**result.to_dict())


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT, summary="Record a logout")
async def logout(principal: PrincipalDep, accounts: AccountsDep, ctx: ContextDep) -> None:
    await accounts.logout(principal, ctx)


@router.get("/me", response_model=MeResponse, summary="Current principal and permissions")
async def me(principal: PrincipalDep, security: SecurityDep) -> MeResponse:
    return MeResponse(
        user=PrincipalResponse(**principal.to_dict()),
        permissions=security.permissions.permissions_for(principal),
    )
