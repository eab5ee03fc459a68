"""Warden — Exception hierarchy.

All exceptions raised by Warden inherit from WardenError so that callers
can catch the full family with a single except clause when needed.

Hierarchy:
    WardenError
    ├── SecurityError
    │   ├── AuthenticationError     (missing / invalid / expired / unknown principal)
    │   ├── AuthorizationError      (insufficient role or permission)
    │   └── AccountStateError       (disabled / locked)
    ├── ValidationError             (malformed event fields, corrected not raised)
    ├── PersistenceError            (store unavailable)
    ├── UserNotFoundError
    ├── UserExistsError
    ├── CipherError
    │   ├── EncryptionError
    │   └── DecryptionError
    ├── ConfigurationError          (missing master key, bad settings)
    └── MonitoringError             (never propagated out of SecurityMonitor)

The ``reason`` carried by the security errors is for audit records and logs
only.  HTTP responses render a generic message (see ``api.middleware``).
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class WardenError(Exception):
    """Base exception for all Warden errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = context or {}

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context})"


# ---------------------------------------------------------------------------
# Reason codes
# ---------------------------------------------------------------------------


class AuthenticationFailure(str, Enum):
    MISSING = "missing"
    INVALID = "invalid"
    EXPIRED = "expired"
    PRINCIPAL_NOT_FOUND = "principal_not_found"


class AccountState(str, Enum):
    DISABLED = "disabled"
    LOCKED = "locked"


class AuthorizationFailure(str, Enum):
    INSUFFICIENT_PERMISSION = "insufficient_permission"


# ---------------------------------------------------------------------------
# Security layer
# ---------------------------------------------------------------------------


class SecurityError(WardenError):
    """Base for all access-control errors."""


class AuthenticationError(SecurityError):
    """The bearer credential is missing, invalid, expired, or names no live account."""

    def __init__(
        self,
        reason: AuthenticationFailure,
        subject: str | None = None,
    ) -> None:
        super().__init__(
            f"Authentication failed: {reason.value}",
            context={"reason": reason.value, "subject": subject},
        )
        self.reason = reason
        self.subject = subject


class AuthorizationError(SecurityError):
    """The principal holds no role granting the required permission."""

    def __init__(
        self,
        requirement: str,
        user_id: str | None = None,
        reason: AuthorizationFailure = AuthorizationFailure.INSUFFICIENT_PERMISSION,
    ) -> None:
        super().__init__(
            f"Access denied: '{requirement}' not granted",
            context={"requirement": requirement, "user_id": user_id, "reason": reason.value},
        )
        self.requirement = requirement
        self.user_id = user_id
        self.reason = reason


class AccountStateError(SecurityError):
    """The account exists but is disabled or currently locked."""

    def __init__(
        self,
        state: AccountState,
        user_id: str | None = None,
        locked_until: float | None = None,
    ) -> None:
        super().__init__(
            f"Account unavailable: {state.value}",
            context={"state": state.value, "user_id": user_id, "locked_until": locked_until},
        )
        self.state = state
        self.user_id = user_id
        self.locked_until = locked_until


# ---------------------------------------------------------------------------
# Audit / persistence
# ---------------------------------------------------------------------------


class ValidationError(WardenError):
    """An audit event field was malformed and has been replaced by a safe default."""

    def __init__(self, field: str, value: Any, fallback: Any) -> None:
        super().__init__(
            f"Invalid value for '{field}': {value!r} (using {fallback!r})",
            context={"field": field, "value": repr(value), "fallback": repr(fallback)},
        )
        self.field = field
        self.value = value
        self.fallback = fallback


class PersistenceError(WardenError):
    """The backing store is unavailable or rejected the write."""


class UserNotFoundError(WardenError):
    """No account matches the given id or username."""

    def __init__(self, key: str) -> None:
        super().__init__(f"User not found: '{key}'", context={"key": key})
        self.key = key


class UserExistsError(WardenError):
    """An account with the same username already exists."""

    def __init__(self, username: str) -> None:
        super().__init__(f"Username already taken: '{username}'", context={"username": username})
        self.username = username


# ---------------------------------------------------------------------------
# Secrets
# ---------------------------------------------------------------------------


class CipherError(WardenError):
    """Base for secret encryption errors.  Never carries plaintext."""


class EncryptionError(CipherError):
    """A secret could not be encrypted."""


class DecryptionError(CipherError):
    """A secret blob is malformed, tampered with, or sealed under another key."""


# ---------------------------------------------------------------------------
# Configuration / monitoring
# ---------------------------------------------------------------------------


class ConfigurationError(WardenError):
    """A required configuration value is missing or invalid."""


class MonitoringError(WardenError):
    """SecurityMonitor failed to count or dispatch.  Logged, never raised to callers."""
