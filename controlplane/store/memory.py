"""In-process permission store for development and tests (fallback when Postgres is not configured)."""

from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Dict, FrozenSet, Iterator, List, Optional, Set, Tuple

from controlplane.context import OpContext
from controlplane.errors import AlreadyExists, NotFound, ScopeNotFound
from controlplane.models import (
    SYSTEM_PERMISSIONS,
    SYSTEM_ROLE_ACTIONS,
    SYSTEM_ROLES,
    Organization,
    Permission,
    Project,
    Resource,
    Role,
    RoleAssignment,
    User,
)
from controlplane.scope import ScopeRef, ScopeType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _State:
    users: Dict[str, User] = field(default_factory=dict)
    organizations: Dict[str, Organization] = field(default_factory=dict)
    projects: Dict[str, Project] = field(default_factory=dict)
    resources: Dict[str, Resource] = field(default_factory=dict)
    roles: Dict[str, Role] = field(default_factory=dict)
    role_permissions: Dict[str, Set[Permission]] = field(default_factory=dict)
    assignments: Dict[str, RoleAssignment] = field(default_factory=dict)


class MemoryTransaction:
    """Operates on a private copy of the state; the store swaps it in on commit."""

    def __init__(self, state: _State, now: datetime) -> None:
        self._s = state
        self._now = now

    def scope_exists(self, scope: ScopeRef) -> bool:
        if scope.scope_type == ScopeType.ORGANIZATION:
            return scope.scope_id in self._s.organizations
        if scope.scope_type == ScopeType.PROJECT:
            return scope.scope_id in self._s.projects
        return scope.scope_id in self._s.resources

    def insert_organization(self, org_id: str, name: str) -> Organization:
        if org_id in self._s.organizations:
            raise AlreadyExists(f"organization already exists: {org_id}")
        org = Organization(org_id=org_id, name=name, created_at=self._now, updated_at=self._now)
        self._s.organizations[org_id] = org
        return org

    def insert_project(self, project_id: str, org_id: str, name: str, description: str) -> Project:
        if project_id in self._s.projects:
            raise AlreadyExists(f"project already exists: {project_id}")
        if org_id not in self._s.organizations:
            raise ScopeNotFound(ScopeType.ORGANIZATION.value, org_id)
        proj = Project(
            project_id=project_id,
            org_id=org_id,
            name=name,
            description=description,
            created_at=self._now,
            updated_at=self._now,
        )
        self._s.projects[project_id] = proj
        return proj

    def insert_resource(self, resource_id: str, project_id: str, name: str, resource_type: str) -> Resource:
        if resource_id in self._s.resources:
            raise AlreadyExists(f"resource already exists: {resource_id}")
        if project_id not in self._s.projects:
            raise ScopeNotFound(ScopeType.PROJECT.value, project_id)
        res = Resource(
            resource_id=resource_id,
            project_id=project_id,
            name=name,
            resource_type=resource_type,
            created_at=self._now,
            updated_at=self._now,
        )
        self._s.resources[resource_id] = res
        return res

    def role_by_name(self, name: str) -> Optional[Role]:
        for role in self._s.roles.values():
            if role.name == name:
                return role
        return None

    def get_user(self, user_id: str) -> Optional[User]:
        return self._s.users.get(user_id)

    def create_user(self, user_id: str, email: Optional[str], name: Optional[str]) -> None:
        self._s.users.setdefault(user_id, User(user_id=user_id, email=email, name=name))

    def update_user(self, user_id: str, email: Optional[str], name: Optional[str]) -> None:
        cur = self._s.users.get(user_id)
        if cur is None:
            return
        self._s.users[user_id] = User(user_id=user_id, email=email or cur.email, name=name or cur.name)

    def create_placeholder_user(self, email: str) -> None:
        self._s.users.setdefault(email, User(user_id=email, email=email, name=email.split("@", 1)[0]))

    def delete_user(self, user_id: str) -> int:
        return 1 if self._s.users.pop(user_id, None) is not None else 0

    def _find_grant(self, user_id: str, role_id: str, scope: ScopeRef) -> Optional[RoleAssignment]:
        for a in self._s.assignments.values():
            if a.user_id == user_id and a.role_id == role_id and a.scope == scope:
                return a
        return None

    def insert_assignment(
        self,
        *,
        assignment_id: str,
        user_id: str,
        role_id: str,
        scope: ScopeRef,
        assigned_by: Optional[str],
        expires_at: Optional[datetime],
    ) -> Optional[RoleAssignment]:
        if user_id not in self._s.users:
            raise NotFound(f"user not found: {user_id}")
        if role_id not in self._s.roles:
            raise NotFound(f"role not found: {role_id}")
        existing = self._find_grant(user_id, role_id, scope)
        if existing is not None:
            if existing.is_active(self._now):
                return None
            # Re-granting a lapsed role reactivates the existing row.
            revived = replace(existing, assigned_by=assigned_by, expires_at=expires_at)
            self._s.assignments[existing.assignment_id] = revived
            return revived
        a = RoleAssignment(
            assignment_id=assignment_id,
            user_id=user_id,
            role_id=role_id,
            scope=scope,
            assigned_by=assigned_by,
            created_at=self._now,
            expires_at=expires_at,
        )
        self._s.assignments[assignment_id] = a
        return a

    def get_assignment(self, assignment_id: str) -> Optional[RoleAssignment]:
        return self._s.assignments.get(assignment_id)

    def delete_assignment(self, assignment_id: str) -> bool:
        return self._s.assignments.pop(assignment_id, None) is not None

    def expire_assignment(self, assignment_id: str) -> bool:
        a = self._s.assignments.get(assignment_id)
        if a is None or not a.is_active(self._now):
            return False
        self._s.assignments[assignment_id] = replace(a, expires_at=self._now)
        return True

    def transfer_assignments(self, from_user_id: str, to_user_id: str) -> int:
        moved = 0
        for aid, a in list(self._s.assignments.items()):
            if a.user_id != from_user_id:
                continue
            dup = self._find_grant(to_user_id, a.role_id, a.scope)
            if dup is not None:
                if dup.is_active(self._now):
                    del self._s.assignments[aid]
                    continue
                del self._s.assignments[dup.assignment_id]
            self._s.assignments[aid] = replace(a, user_id=to_user_id)
            moved += 1
        return moved


class MemoryStore:
    """
    Dict-backed PermissionStore with the same transactional contract as PostgresStore.

    `clock` supplies "now" for expiry evaluation and timestamps; tests inject a fixed
    or steppable clock to exercise expiry deterministically.
    """

    def __init__(self, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._state = _State()

    @classmethod
    def with_system_roles(cls, *, clock: Callable[[], datetime] = _utcnow) -> "MemoryStore":
        store = cls(clock=clock)
        by_action = {p.action: p for p in SYSTEM_PERMISSIONS}
        for role in SYSTEM_ROLES:
            store._state.roles[role.role_id] = role
            store._state.role_permissions[role.role_id] = {by_action[a] for a in SYSTEM_ROLE_ACTIONS[role.name]}
        return store

    def close(self) -> None:
        return None

    @contextmanager
    def transaction(self, ctx: OpContext) -> Iterator[MemoryTransaction]:
        ctx.check()
        with self._lock:
            working = copy.deepcopy(self._state)
            yield MemoryTransaction(working, self._clock())
            ctx.check()
            self._state = working

    def _read(self, ctx: OpContext) -> Tuple[_State, datetime]:
        ctx.check()
        return self._state, self._clock()

    def permissions_for_role(self, ctx: OpContext, role_id: str) -> FrozenSet[Permission]:
        state, _ = self._read(ctx)
        return frozenset(state.role_permissions.get(role_id, ()))

    def active_assignments(self, ctx: OpContext, user_id: str) -> List[RoleAssignment]:
        state, now = self._read(ctx)
        out = [a for a in state.assignments.values() if a.user_id == user_id and a.is_active(now)]
        out.sort(key=lambda a: a.created_at, reverse=True)
        return out

    def active_assignments_at(self, ctx: OpContext, scope: ScopeRef) -> List[RoleAssignment]:
        state, now = self._read(ctx)
        out = [a for a in state.assignments.values() if a.scope == scope and a.is_active(now)]
        out.sort(key=lambda a: a.created_at, reverse=True)
        return out

    def parent_of(self, ctx: OpContext, scope: ScopeRef) -> Optional[ScopeRef]:
        state, _ = self._read(ctx)
        if scope.scope_type == ScopeType.ORGANIZATION:
            if scope.scope_id not in state.organizations:
                raise ScopeNotFound(scope.scope_type.value, scope.scope_id)
            return None
        if scope.scope_type == ScopeType.PROJECT:
            proj = state.projects.get(scope.scope_id)
            if proj is None:
                raise ScopeNotFound(scope.scope_type.value, scope.scope_id)
            return ScopeRef.organization(proj.org_id)
        res = state.resources.get(scope.scope_id)
        if res is None:
            raise ScopeNotFound(scope.scope_type.value, scope.scope_id)
        return ScopeRef.project(res.project_id)

    def list_roles(self, ctx: OpContext) -> List[Role]:
        state, _ = self._read(ctx)
        return list(state.roles.values())

    def role_by_name(self, ctx: OpContext, name: str) -> Optional[Role]:
        state, _ = self._read(ctx)
        for role in state.roles.values():
            if role.name == name:
                return role
        return None

    def get_user(self, ctx: OpContext, user_id: str) -> Optional[User]:
        state, _ = self._read(ctx)
        return state.users.get(user_id)

    def _granted_scopes(self, state: _State, now: datetime, user_id: str) -> Set[ScopeRef]:
        return {a.scope for a in state.assignments.values() if a.user_id == user_id and a.is_active(now)}

    def organizations_for_user(self, ctx: OpContext, user_id: str) -> List[Organization]:
        state, now = self._read(ctx)
        granted = self._granted_scopes(state, now, user_id)
        orgs = [o for o in state.organizations.values() if ScopeRef.organization(o.org_id) in granted]
        return sorted(orgs, key=lambda o: o.name)

    def projects_for_user(self, ctx: OpContext, user_id: str, org_id: Optional[str] = None) -> List[Project]:
        state, now = self._read(ctx)
        granted = self._granted_scopes(state, now, user_id)
        out = [
            p
            for p in state.projects.values()
            if (org_id is None or p.org_id == org_id)
            and (ScopeRef.project(p.project_id) in granted or ScopeRef.organization(p.org_id) in granted)
        ]
        return sorted(out, key=lambda p: p.name)

    # ---- test/dev helpers (not part of PermissionStore) ----

    def users(self) -> List[User]:
        return list(self._state.users.values())

    def all_assignments(self) -> List[RoleAssignment]:
        """Every assignment row, expired ones included."""
        return list(self._state.assignments.values())
