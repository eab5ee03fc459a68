"""Unit tests — API dependencies (request context, route guards)."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock

import pytest
from starlette.requests import Request

from warden.api.dependencies import request_context, require_permission
from warden.exceptions import AuthenticationError, AuthenticationFailure
from warden.security.gate import AuthorizationGate, PermissionRequirement
from warden.security.models import Decision, Principal, RequestContext, Role


def _request(headers: dict[str, str] | None = None, app: Any = None) -> Request:
    scope = {
        "type": "http",
        "method": "POST",
        "scheme": "http",
        "server": ("testserver", 80),
        "path": "/auth/login",
        "root_path": "",
        "query_string": b"",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": ("203.0.113.9", 50000),
        "app": app,
    }
    return Request(scope)


def _app_with_gate(gate: AsyncMock) -> SimpleNamespace:
    return SimpleNamespace(state=SimpleNamespace(security=SimpleNamespace(gate=gate)))


@pytest.mark.unit
class TestRequestContext:
    def test_uses_peer_address(self) -> None:
        ctx = request_context(_request({"User-Agent": "pytest"}))
        assert ctx.ip == "203.0.113.9"
        assert ctx.user_agent == "pytest"
        assert ctx.path == "/auth/login"

    def test_forwarded_header_is_ignored(self) -> None:
        ctx = request_context(_request({"X-Forwarded-For": "198.51.100.7, 10.0.0.1"}))
        assert ctx.ip == "203.0.113.9"


@pytest.mark.unit
class TestGuard:
    async def test_returns_decision_principal(self) -> None:
        principal = Principal(user_id="u-1", username="alice", roles=frozenset({Role.ADMIN}))
        gate = AsyncMock(spec=AuthorizationGate)
        gate.authorize.return_value = Decision(allowed=True, principal=principal)
        dependency = require_permission("audit", "read")
        request = _request(app=_app_with_gate(gate))

        result = await dependency(request, RequestContext(), authorization="Bearer tok")

        assert result is principal
        token, requirement, _ = gate.authorize.await_args.args
        assert token == "tok"
        assert requirement == PermissionRequirement("audit", "read")

    async def test_decision_without_principal_is_rejected(self) -> None:
        gate = AsyncMock(spec=AuthorizationGate)
        gate.authorize.return_value = Decision(allowed=True, principal=None)
        dependency = require_permission("audit", "read")
        request = _request(app=_app_with_gate(gate))

        with pytest.raises(AuthenticationError) as exc_info:
            await dependency(request, RequestContext(), authorization="Bearer tok")
        assert exc_info.value.reason == AuthenticationFailure.PRINCIPAL_NOT_FOUND
