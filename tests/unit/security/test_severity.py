"""Unit tests — severity_of classification tables."""

from __future__ import annotations

import pytest

from warden.security.models import AuditAction, Severity
from warden.security.severity import severity_of


@pytest.mark.unit
class TestSeverityOf:
    @pytest.mark.parametrize(
        "action",
        ["ACCOUNT_LOCKED", "BRUTE_FORCE_ATTEMPT", "UNAUTHORIZED_ACCESS", "DATA_BREACH",
         "SYSTEM_COMPROMISE", "ADMIN_PRIVILEGE_ESCALATION", "USER_LOCKED"],
    )
    def test_critical(self, action: str) -> None:
        assert severity_of(action) == Severity.CRITICAL

    @pytest.mark.parametrize(
        "action",
        ["LOGIN_FAILED", "USER_LOGIN_FAILED", "PERMISSION_DENIED", "PASSWORD_CHANGE",
         "ROLE_CHANGE", "USER_DELETE", "DEVICE_DELETE", "LOCATION_DELETE",
         "SERVER_EXECUTE", "AUDIT_DELETE", "SYSTEM_CONFIG_CHANGE"],
    )
    def test_high(self, action: str) -> None:
        assert severity_of(action) == Severity.HIGH

    @pytest.mark.parametrize(
        "action",
        ["LOGIN_SUCCESS", "LOGOUT", "USER_CREATE", "USER_UPDATE", "DEVICE_CREATE",
         "DEVICE_UPDATE", "LOCATION_CREATE", "LOCATION_UPDATE", "PASSWORD_CREATE",
         "PASSWORD_UPDATE", "SERVER_CREATE", "SERVER_UPDATE"],
    )
    def test_medium(self, action: str) -> None:
        assert severity_of(action) == Severity.MEDIUM

    def test_unlisted_is_low(self) -> None:
        assert severity_of("DEVICE_VIEWED") == Severity.LOW
        assert severity_of("SOMETHING_ELSE") == Severity.LOW
        assert severity_of("") == Severity.LOW

    def test_accepts_enum_members(self) -> None:
        assert severity_of(AuditAction.USER_LOGIN) == Severity.MEDIUM
        assert severity_of(AuditAction.USER_ACCESS_DENIED) == Severity.HIGH

    def test_is_deterministic(self) -> None:
        assert {severity_of("ROLE_CHANGED") for _ in range(5)} == {Severity.HIGH}
