"""Security layer — PermissionModel.

Static role → permission-matrix lookup:
  - ``MODULE_ACTIONS``   — every module and the actions it exposes
  - ``ROLE_MATRICES``    — default matrix for each ``Role``
  - ``PermissionModel``  — ``has_permission`` / ``has_role`` / ``scope_filter``
  - ``AccessScope``      — department row-scoping predicate for data-access code

Lookups are total: a module or action that is not in the matrix is denied.
The model holds no mutable state and is safe to share between requests.

Usage::

    model = PermissionModel()
    if model.has_permission(principal, "passwords", "decrypt"):
        ...
    clause, params = model.scope_filter(principal).where()
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from warden.security.models import Principal, Role

PermissionMatrix = dict[str, dict[str, bool]]


# ---------------------------------------------------------------------------
# Module / action catalogue
# ---------------------------------------------------------------------------

MODULE_ACTIONS: dict[str, tuple[str, ...]] = {
    "users": ("create", "read", "update", "delete"),
    "inventory": ("create", "read", "update", "delete", "qr_generate", "export"),
    "locations": ("create", "read", "update", "delete", "floor_plans"),
    "passwords": ("create", "read", "update", "delete", "decrypt"),
    "servers": ("read", "execute_scripts", "system_info", "logs"),
    "audit": ("read", "export"),
    "system": ("backup", "settings", "maintenance"),
}


def _matrix(grants: Mapping[str, Iterable[str]]) -> PermissionMatrix:
    """Expand ``{module: granted_actions}`` into a full boolean matrix."""
    matrix: PermissionMatrix = {}
    for module, actions in MODULE_ACTIONS.items():
        granted = set(grants.get(module, ()))
        matrix[module] = {action: action in granted for action in actions}
    return matrix


ROLE_MATRICES: dict[Role, PermissionMatrix] = {
    Role.ADMIN: _matrix(MODULE_ACTIONS),
    Role.SYSTEM_ADMIN: _matrix(
        {
            "users": ("read",),
            "inventory": ("create", "read", "update", "qr_generate", "export"),
            "locations": ("create", "read", "update", "floor_plans"),
            "passwords": ("create", "read", "update", "decrypt"),
            "servers": MODULE_ACTIONS["servers"],
            "audit": ("read",),
            "system": ("maintenance",),
        }
    ),
    Role.TECH_SUPPORT: _matrix(
        {
            "users": ("read",),
            "inventory": ("create", "read", "update", "qr_generate"),
            "locations": ("read",),
            "passwords": ("read",),
            "servers": ("read", "system_info"),
        }
    ),
    Role.DEPARTMENT_MANAGER: _matrix(
        {
            "users": ("read",),
            "inventory": ("read",),
            "locations": ("read",),
        }
    ),
    Role.OBSERVER: _matrix(
        {
            "inventory": ("read",),
            "locations": ("read",),
        }
    ),
}

# Roles whose holders see every department.
UNSCOPED_ROLES: frozenset[Role] = frozenset({Role.ADMIN, Role.SYSTEM_ADMIN})


# ---------------------------------------------------------------------------
# Row scoping
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AccessScope:
    """Department predicate applied by data-access code after authorization.

    ``unrestricted`` scopes match every row.  Restricted scopes match rows
    whose ``department`` equals the principal's; a restricted scope without
    a department matches nothing.
    """

    unrestricted: bool
    department: str | None = None

    def allows(self, record: Any) -> bool:
        if self.unrestricted:
            return True
        if self.department is None:
            return False
        if isinstance(record, Mapping):
            value = record.get("department")
        else:
            value = getattr(record, "department", None)
        return value == self.department

    def where(self, column: str = "department") -> tuple[str, tuple[Any, ...]]:
        """Render the scope as an SQL fragment and its parameters."""
        if self.unrestricted:
            return "1=1", ()
        if self.department is None:
            return "1=0", ()
        return f"{column} = ?", (self.department,)


# ---------------------------------------------------------------------------
# PermissionModel
# ---------------------------------------------------------------------------


class PermissionModel:
    """Role-based permission evaluation over static matrices.

    Parameters
    ----------
    matrices:
        Optional replacement for ``ROLE_MATRICES``.  Roles missing from the
        mapping grant nothing.
    """

    def __init__(self, matrices: Mapping[Role, PermissionMatrix] | None = None) -> None:
        self._matrices: Mapping[Role, PermissionMatrix] = (
            matrices if matrices is not None else ROLE_MATRICES
        )

    def matrix_for(self, role: Role) -> PermissionMatrix:
        """Return a copy of *role*'s matrix."""
        matrix = self._matrices.get(role, {})
        return {module: dict(actions) for module, actions in matrix.items()}

    def grants(self, role: Role, module: str, action: str) -> bool:
        return self._matrices.get(role, {}).get(module, {}).get(action, False) is True

    def has_permission(self, principal: Principal, module: str, action: str) -> bool:
        """True iff any role held by *principal* grants *module*.*action*."""
        return any(self.grants(role, module, action) for role in principal.roles)

    def has_role(self, principal: Principal, roles: Iterable[Role]) -> bool:
        """True iff *principal* holds at least one of *roles*."""
        return not principal.roles.isdisjoint(roles)

    def permissions_for(self, principal: Principal) -> PermissionMatrix:
        """Merge the matrices of every held role (logical OR)."""
        merged: PermissionMatrix = {
            module: {action: False for action in actions}
            for module, actions in MODULE_ACTIONS.items()
        }
        for role in principal.roles:
            for module, actions in self._matrices.get(role, {}).items():
                row = merged.setdefault(module, {})
                for action, allowed in actions.items():
                    row[action] = row.get(action, False) or allowed is True
        return merged

    def scope_filter(self, principal: Principal) -> AccessScope:
        """Department scoping for *principal*.

        ADMIN and SYSTEM_ADMIN see everything.  A DEPARTMENT_MANAGER without
        one of those roles is limited to their own department.  Every other
        principal is unrestricted for the rows their permissions already
        allow.
        """
        if self.has_role(principal, UNSCOPED_ROLES):
            return AccessScope(unrestricted=True)
        if Role.DEPARTMENT_MANAGER in principal.roles:
            return AccessScope(unrestricted=False, department=principal.department)
        return AccessScope(unrestricted=True)
