"""
auth/permissions.py -- Static role -> resource -> action permission matrix.

The matrix is built once at process start (api/main.py lifespan) and frozen
into nested MappingProxyType views. Nothing at runtime can mutate it, so no
request can leak a permission change into another request.

Role definitions ship as configuration, not user data. The built-in matrix
below is the default; PERMISSIONS_FILE may point at a JSON document of the
same shape to replace it wholesale:

    {"admin": {"users": {"read": true, ...}, ...}, "manager": {...}, "user": {...}}

Lookups for an unknown role, resource, or action return False. There is no
fallback to another role's permissions.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from pathlib import Path
from types import MappingProxyType

from auth.models import ROLES

logger = logging.getLogger("dashboard.auth")

DEFAULT_PERMISSIONS: dict[str, dict[str, dict[str, bool]]] = {
    "admin": {
        "users": {"create": True, "read": True, "update": True, "delete": True},
        "stats": {"read": True},
        "logs": {"read": True, "delete": True, "export": True},
        "profile": {"read": True, "update": True},
    },
    "manager": {
        "users": {"create": False, "read": True, "update": True, "delete": False},
        "stats": {"read": True},
        "logs": {"read": True, "delete": False, "export": True},
        "profile": {"read": True, "update": True},
    },
    "user": {
        "users": {"create": False, "read": False, "update": False, "delete": False},
        "stats": {"read": False},
        "logs": {"read": False, "delete": False, "export": False},
        "profile": {"read": True, "update": True},
    },
}


def _freeze(matrix: Mapping) -> Mapping[str, Mapping[str, Mapping[str, bool]]]:
    """Validate and deep-freeze a raw matrix.

    Raises ValueError for unknown roles or non-boolean grants so a typo in a
    permissions file fails at startup instead of silently denying access.
    """
    frozen: dict[str, Mapping[str, Mapping[str, bool]]] = {}
    for role, resources in matrix.items():
        if role not in ROLES:
            raise ValueError(f"Unknown role in permission matrix: {role!r}")
        if not isinstance(resources, Mapping):
            raise ValueError(f"Permissions for role {role!r} must be an object")
        frozen_resources: dict[str, Mapping[str, bool]] = {}
        for resource, actions in resources.items():
            if not isinstance(actions, Mapping):
                raise ValueError(f"Actions for {role}.{resource} must be an object")
            for action, granted in actions.items():
                if not isinstance(granted, bool):
                    raise ValueError(f"Grant for {role}.{resource}.{action} must be true or false")
            frozen_resources[resource] = MappingProxyType(dict(actions))
        frozen[role] = MappingProxyType(frozen_resources)
    return MappingProxyType(frozen)


class PermissionTable:
    """Read-only permission lookup.

    Usage:
        table = PermissionTable()                     # built-in matrix
        table.allows("manager", "logs", "export")     # True
        table.allows("manager", "logs", "delete")     # False
    """

    def __init__(self, matrix: Mapping | None = None) -> None:
        self._matrix = _freeze(DEFAULT_PERMISSIONS if matrix is None else matrix)

    def allows(self, role: str, resource: str, action: str) -> bool:
        return bool(self._matrix.get(role, {}).get(resource, {}).get(action, False))

    def for_role(self, role: str) -> Mapping[str, Mapping[str, bool]]:
        """Return the frozen resource -> action view for a role (empty if unknown)."""
        return self._matrix.get(role, MappingProxyType({}))

    @property
    def roles(self) -> list[str]:
        return sorted(self._matrix)


def load_permission_table(path: str = "") -> PermissionTable:
    """Build the process-wide PermissionTable.

    Empty path -> built-in matrix. Otherwise the file must exist and parse;
    a broken permissions file is a startup error, never a silent fallback.
    """
    if not path:
        return PermissionTable()
    file_path = Path(path).resolve()
    if not file_path.is_file():
        raise ValueError(f"PERMISSIONS_FILE '{path}' is not a readable file.")
    matrix = json.loads(file_path.read_text(encoding="utf-8"))
    if not isinstance(matrix, dict):
        raise ValueError("PERMISSIONS_FILE must contain a JSON object keyed by role.")
    table = PermissionTable(matrix)
    logger.info("Loaded permission matrix from %s (roles=%s)", file_path, ",".join(table.roles))
    return table
