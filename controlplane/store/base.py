from __future__ import annotations

from datetime import datetime
from typing import ContextManager, FrozenSet, List, Optional, Protocol, runtime_checkable

from controlplane.context import OpContext
from controlplane.models import Organization, Permission, Project, Resource, Role, RoleAssignment, User
from controlplane.scope import ScopeRef


class StoreTransaction(Protocol):
    """
    Write operations available inside `PermissionStore.transaction()`.

    All calls made through one transaction commit together when the `with` block
    exits normally and roll back together if it raises.
    """

    def scope_exists(self, scope: ScopeRef) -> bool: ...

    def insert_organization(self, org_id: str, name: str) -> Organization: ...

    def insert_project(self, project_id: str, org_id: str, name: str, description: str) -> Project: ...

    def insert_resource(self, resource_id: str, project_id: str, name: str, resource_type: str) -> Resource: ...

    def role_by_name(self, name: str) -> Optional[Role]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_user(self, user_id: str, email: Optional[str], name: Optional[str]) -> None: ...

    def update_user(self, user_id: str, email: Optional[str], name: Optional[str]) -> None: ...

    def create_placeholder_user(self, email: str) -> None: ...

    def delete_user(self, user_id: str) -> int: ...

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
        """Insert a grant. Returns None (no-op) when an active (user, role, scope) grant exists; an expired one is reactivated and returned."""

    def get_assignment(self, assignment_id: str) -> Optional[RoleAssignment]: ...

    def delete_assignment(self, assignment_id: str) -> bool: ...

    def expire_assignment(self, assignment_id: str) -> bool: ...

    def transfer_assignments(self, from_user_id: str, to_user_id: str) -> int: ...


@runtime_checkable
class PermissionStore(Protocol):
    """Read side of the store plus a transaction factory for writes."""

    def permissions_for_role(self, ctx: OpContext, role_id: str) -> FrozenSet[Permission]: ...

    def active_assignments(self, ctx: OpContext, user_id: str) -> List[RoleAssignment]: ...

    def active_assignments_at(self, ctx: OpContext, scope: ScopeRef) -> List[RoleAssignment]: ...

    def parent_of(self, ctx: OpContext, scope: ScopeRef) -> Optional[ScopeRef]: ...

    def list_roles(self, ctx: OpContext) -> List[Role]: ...

    def role_by_name(self, ctx: OpContext, name: str) -> Optional[Role]: ...

    def get_user(self, ctx: OpContext, user_id: str) -> Optional[User]: ...

    def organizations_for_user(self, ctx: OpContext, user_id: str) -> List[Organization]:
        """Organizations where `user_id` holds an active grant, ordered by name."""

    def projects_for_user(self, ctx: OpContext, user_id: str, org_id: Optional[str] = None) -> List[Project]:
        """
        Projects where `user_id` holds an active grant on the project or on its
        organization, ordered by name. `org_id` narrows the listing to one organization.
        """

    def transaction(self, ctx: OpContext) -> ContextManager[StoreTransaction]: ...

    def close(self) -> None: ...
