"""Domain records (users, roles, permissions, assignments, scope entities)."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, FrozenSet, Optional, Tuple

from controlplane.scope import ScopeRef

# Permission domain tag for this system's own resource types.
RESOURCE_TYPE = "controlplane"


class Action:
    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    MANAGE_ACCESS = "manage_access"

    ALL: FrozenSet[str] = frozenset({READ, WRITE, DELETE, MANAGE_ACCESS})


@dataclass(frozen=True)
class Role:
    role_id: str
    name: str
    display_name: str
    is_system: bool = False
    description: Optional[str] = None


@dataclass(frozen=True)
class Permission:
    permission_id: str
    resource_type: str
    action: str


@dataclass(frozen=True)
class RoleAssignment:
    assignment_id: str
    user_id: str
    role_id: str
    scope: ScopeRef
    assigned_by: Optional[str]
    created_at: datetime
    expires_at: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        return self.expires_at is None or self.expires_at > now


@dataclass(frozen=True)
class User:
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None

    @property
    def is_placeholder(self) -> bool:
        """Invited identities are keyed by their email until the real user signs in."""
        return bool(self.email) and self.user_id == self.email


@dataclass(frozen=True)
class Organization:
    org_id: str
    name: str
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class Project:
    project_id: str
    org_id: str
    name: str
    description: str
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class Resource:
    resource_id: str
    project_id: str
    name: str
    resource_type: str
    created_at: datetime
    updated_at: datetime


# ---- System role seed data ----
#
# Owner > Editor > Viewer, each a superset of the next. IDs are fixed so that
# store/schema.sql and MemoryStore seed identical reference data.

OWNER_ROLE = "Owner"
EDITOR_ROLE = "Editor"
VIEWER_ROLE = "Viewer"

SYSTEM_ROLES: Tuple[Role, ...] = (
    Role("00000000-0000-0000-0001-000000000001", OWNER_ROLE, "Owner", True, "Full access including access management"),
    Role("00000000-0000-0000-0001-000000000002", EDITOR_ROLE, "Editor", True, "Read and modify"),
    Role("00000000-0000-0000-0001-000000000003", VIEWER_ROLE, "Viewer", True, "Read-only access"),
)

SYSTEM_PERMISSIONS: Tuple[Permission, ...] = (
    Permission("00000000-0000-0000-0002-000000000001", RESOURCE_TYPE, Action.READ),
    Permission("00000000-0000-0000-0002-000000000002", RESOURCE_TYPE, Action.WRITE),
    Permission("00000000-0000-0000-0002-000000000003", RESOURCE_TYPE, Action.DELETE),
    Permission("00000000-0000-0000-0002-000000000004", RESOURCE_TYPE, Action.MANAGE_ACCESS),
)

SYSTEM_ROLE_ACTIONS: Dict[str, FrozenSet[str]] = {
    OWNER_ROLE: frozenset({Action.READ, Action.WRITE, Action.DELETE, Action.MANAGE_ACCESS}),
    EDITOR_ROLE: frozenset({Action.READ, Action.WRITE}),
    VIEWER_ROLE: frozenset({Action.READ}),
}
