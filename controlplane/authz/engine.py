"""
Scope-hierarchical authorization decisions.

The engine holds no state beyond its store handle. Every call reads the current
committed snapshot; nothing is cached across calls except role -> permission
expansion, which the store caches as reference data.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set

from controlplane.context import OpContext
from controlplane.errors import PermissionDenied, ScopeNotFound, StoreUnavailable
from controlplane.models import RESOURCE_TYPE, Action, Organization, Project, RoleAssignment
from controlplane.scope import ScopeRef, walk_ancestors
from controlplane.store.base import PermissionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InheritedAssignment:
    assignment: RoleAssignment
    # None for a grant anchored directly at the listed scope.
    inherited_from: Optional[ScopeRef] = None


class AuthorizationEngine:
    def __init__(self, store: PermissionStore, resource_type: str = RESOURCE_TYPE) -> None:
        self.store = store
        self.resource_type = resource_type

    def effective_scopes(self, ctx: OpContext, scope: ScopeRef) -> List[ScopeRef]:
        """`scope` plus its ancestors, nearest first. Raises ScopeNotFound for a missing scope."""
        return walk_ancestors(self.store, ctx, scope)

    def _assignments_by_scope(self, ctx: OpContext, user_id: str) -> Dict[ScopeRef, List[RoleAssignment]]:
        out: Dict[ScopeRef, List[RoleAssignment]] = {}
        for a in self.store.active_assignments(ctx, user_id):
            out.setdefault(a.scope, []).append(a)
        return out

    def _actions_for_role(self, ctx: OpContext, role_id: str) -> Set[str]:
        return {p.action for p in self.store.permissions_for_role(ctx, role_id) if p.resource_type == self.resource_type}

    def check_permission(self, ctx: OpContext, user_id: str, action: str, scope: ScopeRef) -> bool:
        """
        Return True iff some active assignment for `user_id` at `scope` or one of its
        ancestors carries a role granting `action`.

        A plain negative decision returns False. A missing scope raises ScopeNotFound
        and store failures raise StoreUnavailable; callers gating an operation must
        treat both as a denial.
        """
        if not user_id:
            return False
        try:
            chain = self.effective_scopes(ctx, scope)
            by_scope = self._assignments_by_scope(ctx, user_id)
            checked_roles: Set[str] = set()
            for level in chain:
                for a in by_scope.get(level, ()):
                    if a.role_id in checked_roles:
                        continue
                    checked_roles.add(a.role_id)
                    if action in self._actions_for_role(ctx, a.role_id):
                        return True
        except StoreUnavailable as e:
            logger.warning("Permission check failed (store): user=%s action=%s scope=%s err=%s", user_id, action, scope, str(e))
            raise
        logger.info("Permission denied: user=%s action=%s scope=%s", user_id, action, scope)
        return False

    def list_permissions(self, ctx: OpContext, user_id: str, scope: ScopeRef) -> Set[str]:
        """Union of actions available to `user_id` at `scope` (direct and inherited)."""
        if not user_id:
            return set()
        chain = self.effective_scopes(ctx, scope)
        by_scope = self._assignments_by_scope(ctx, user_id)
        actions: Set[str] = set()
        role_ids = {a.role_id for level in chain for a in by_scope.get(level, ())}
        for role_id in role_ids:
            actions |= self._actions_for_role(ctx, role_id)
        return actions

    def require_permission(self, ctx: OpContext, user_id: str, action: str, scope: ScopeRef) -> None:
        """
        Raise PermissionDenied unless the check passes.

        A missing scope is reported as PermissionDenied too, so callers cannot probe for
        existence. StoreUnavailable propagates unchanged.
        """
        try:
            allowed = self.check_permission(ctx, user_id, action, scope)
        except ScopeNotFound as e:
            raise PermissionDenied(f"{action} on {scope}") from e
        if not allowed:
            raise PermissionDenied(f"{action} on {scope}")

    def filter_permitted(self, ctx: OpContext, user_id: str, action: str, scopes: Iterable[ScopeRef]) -> List[ScopeRef]:
        """Keep the scopes `user_id` may perform `action` on; missing scopes are skipped."""
        out: List[ScopeRef] = []
        for scope in scopes:
            try:
                if self.check_permission(ctx, user_id, action, scope):
                    out.append(scope)
            except ScopeNotFound:
                continue
        return out

    def assignments_with_inheritance(self, ctx: OpContext, scope: ScopeRef) -> List[InheritedAssignment]:
        """
        Active assignments affecting `scope`: those anchored at it, then those
        inherited from each ancestor (nearest first).
        """
        out: List[InheritedAssignment] = []
        for level in self.effective_scopes(ctx, scope):
            inherited_from = None if level == scope else level
            for a in self.store.active_assignments_at(ctx, level):
                out.append(InheritedAssignment(assignment=a, inherited_from=inherited_from))
        return out

    def list_accessible_organizations(
        self, ctx: OpContext, user_id: str, action: str = Action.READ
    ) -> List[Organization]:
        """Organizations on which `user_id` may perform `action`, by name."""
        if not user_id:
            return []
        candidates = self.store.organizations_for_user(ctx, user_id)
        permitted = set(
            self.filter_permitted(ctx, user_id, action, [ScopeRef.organization(o.org_id) for o in candidates])
        )
        return [o for o in candidates if ScopeRef.organization(o.org_id) in permitted]

    def list_accessible_projects(
        self, ctx: OpContext, user_id: str, action: str = Action.READ, org_id: Optional[str] = None
    ) -> List[Project]:
        """
        Projects on which `user_id` may perform `action`, including those reached
        through a grant on the parent organization.
        """
        if not user_id:
            return []
        candidates = self.store.projects_for_user(ctx, user_id, org_id)
        permitted = set(self.filter_permitted(ctx, user_id, action, [ScopeRef.project(p.project_id) for p in candidates]))
        return [p for p in candidates if ScopeRef.project(p.project_id) in permitted]
