"""GET /users, POST /users/{user_id}/unlock, PUT /users/{user_id}/roles"""

from __future__ import annotations

from fastapi import APIRouter

from warden.api.dependencies import (
    AccountsDep,
    ContextDep,
    SecurityDep,
    UserEditorDep,
    UserReaderDep,
)
from warden.api.schemas import UpdateRolesRequest, UserResponse

router = APIRouter(prefix="/users", tags=["users"])


@router.get("", response_model=list[UserResponse], summary="List accounts")
async def list_users(
    principal: UserReaderDep,
    security: SecurityDep,
    active_only: bool = False,
) -> list[UserResponse]:
    records = await security.users.list_users(active_only=active_only)
    scope = security.gate.scope_filter(principal)
    return [UserResponse(**r.to_dict()) for r in records if scope.allows(r)]


@router.post("/{user_id}/unlock", response_model=UserResponse, summary="Clear an account lock")
async def unlock(
    user_id: str,
    principal: UserEditorDep,
    accounts: AccountsDep,
    ctx: ContextDep,
) -> UserResponse:
    record = await accounts.unlock(user_id, principal, ctx)
    return UserResponse(**record.to_dict())


@router.put("/{user_id}/roles", response_model=UserResponse, summary="Replace an account's roles")
async def update_roles(
    user_id: str,
    body: UpdateRolesRequest,
    principal: UserEditorDep,
    accounts: AccountsDep,
    ctx: ContextDep,
) -> UserResponse:
    record = await accounts.change_roles(user_id, body.roles, principal, ctx)
    return UserResponse(**record.to_dict())
