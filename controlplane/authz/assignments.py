"""
Role assignment lifecycle: bootstrap owners, grants, revocation and placeholder transfer.

Every public operation here runs in exactly one store transaction, so callers never
observe an entity without its owner grant, or a placeholder user without the
assignment it was created for.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from controlplane.auth.base import VerifiedIdentity
from controlplane.context import OpContext
from controlplane.errors import InvalidIdentity, InvalidInput, NotFound, RoleNotFound, ScopeNotFound
from controlplane.models import OWNER_ROLE, Organization, Project, Resource, RoleAssignment
from controlplane.scope import ScopeRef
from controlplane.store.base import PermissionStore, StoreTransaction
from controlplane.validation import is_valid_email, normalize_email, validate_dns_id

logger = logging.getLogger(__name__)


def _new_id() -> str:
    return str(uuid.uuid4())


def _require_name(name: str, *, kind: str) -> str:
    n = (name or "").strip()
    if not n:
        raise InvalidInput(f"{kind} name is required")
    return n


class RoleAssignmentManager:
    def __init__(self, store: PermissionStore, *, id_factory: Callable[[], str] = _new_id) -> None:
        self.store = store
        self._new_id = id_factory

    # ---- entity creation with bootstrap owner ----

    def _grant_owner(self, tx: StoreTransaction, user_id: str, scope: ScopeRef) -> None:
        role = tx.role_by_name(OWNER_ROLE)
        if role is None:
            raise RoleNotFound(OWNER_ROLE)
        if tx.get_user(user_id) is None:
            tx.create_user(user_id, None, None)
        tx.insert_assignment(
            assignment_id=self._new_id(),
            user_id=user_id,
            role_id=role.role_id,
            scope=scope,
            assigned_by=user_id,
            expires_at=None,
        )

    def create_organization(
        self, ctx: OpContext, name: str, owner_user_id: str, org_id: Optional[str] = None
    ) -> Organization:
        name = _require_name(name, kind="organization")
        if not owner_user_id:
            raise InvalidInput("owner user id is required")
        oid = validate_dns_id(org_id, kind="organization ID") if org_id else self._new_id()
        with self.store.transaction(ctx) as tx:
            org = tx.insert_organization(oid, name)
            self._grant_owner(tx, owner_user_id, ScopeRef.organization(oid))
        logger.info("Organization created: org=%s owner=%s", oid, owner_user_id)
        return org

    def create_project(
        self,
        ctx: OpContext,
        org_id: str,
        name: str,
        description: str,
        owner_user_id: str,
        project_id: Optional[str] = None,
    ) -> Project:
        name = _require_name(name, kind="project")
        if not owner_user_id:
            raise InvalidInput("owner user id is required")
        pid = validate_dns_id(project_id, kind="project ID") if project_id else self._new_id()
        with self.store.transaction(ctx) as tx:
            proj = tx.insert_project(pid, org_id, name, description or "")
            self._grant_owner(tx, owner_user_id, ScopeRef.project(pid))
        logger.info("Project created: project=%s org=%s owner=%s", pid, org_id, owner_user_id)
        return proj

    def create_resource(
        self,
        ctx: OpContext,
        project_id: str,
        name: str,
        resource_type: str,
        resource_id: Optional[str] = None,
    ) -> Resource:
        # Resources inherit access from their project; no owner grant here.
        name = _require_name(name, kind="resource")
        rtype = (resource_type or "").strip()
        if not rtype:
            raise InvalidInput("resource type is required")
        rid = validate_dns_id(resource_id, kind="resource ID") if resource_id else self._new_id()
        with self.store.transaction(ctx) as tx:
            res = tx.insert_resource(rid, project_id, name, rtype)
        logger.info("Resource created: resource=%s project=%s type=%s", rid, project_id, rtype)
        return res

    # ---- grants ----

    def assign_role(
        self,
        ctx: OpContext,
        user_id: str,
        role_name: str,
        scope: ScopeRef,
        assigned_by: Optional[str],
        expires_at: Optional[datetime] = None,
    ) -> Optional[RoleAssignment]:
        """
        Grant `role_name` to `user_id` at `scope`.

        Unknown identities are accepted only when they are valid email addresses; a
        placeholder user keyed by the (lower-cased) email is created for them. Returns
        the new assignment, None when an identical grant is already active. A lapsed
        identical grant is reactivated and returned.
        """
        uid = (user_id or "").strip()
        if not uid:
            raise InvalidIdentity("user id is required")
        if expires_at is not None and expires_at.tzinfo is None:
            # Naive timestamps are taken as UTC.
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        with self.store.transaction(ctx) as tx:
            role = tx.role_by_name(role_name)
            if role is None:
                raise RoleNotFound(role_name)
            if not tx.scope_exists(scope):
                raise ScopeNotFound(scope.scope_type.value, scope.scope_id)

            if tx.get_user(uid) is None:
                if not is_valid_email(uid):
                    raise InvalidIdentity(f"user {uid} does not exist and is not a valid email")
                uid = normalize_email(uid)
                if tx.get_user(uid) is None:
                    tx.create_placeholder_user(uid)
                    logger.info("Placeholder user created for invitation: %s", uid)

            created = tx.insert_assignment(
                assignment_id=self._new_id(),
                user_id=uid,
                role_id=role.role_id,
                scope=scope,
                assigned_by=assigned_by,
                expires_at=expires_at,
            )
        if created is None:
            logger.info("Role already assigned: user=%s role=%s scope=%s", uid, role_name, scope)
        else:
            logger.info("Role assigned: user=%s role=%s scope=%s by=%s", uid, role_name, scope, assigned_by)
        return created

    def _load_anchored(self, tx: StoreTransaction, assignment_id: str, scope: Optional[ScopeRef]) -> RoleAssignment:
        a = tx.get_assignment(assignment_id)
        if a is None or (scope is not None and a.scope != scope):
            raise NotFound(f"role assignment not found: {assignment_id}")
        return a

    def revoke_assignment(self, ctx: OpContext, assignment_id: str, scope: Optional[ScopeRef] = None) -> RoleAssignment:
        """Delete an assignment. With `scope`, the assignment must be anchored there."""
        with self.store.transaction(ctx) as tx:
            a = self._load_anchored(tx, assignment_id, scope)
            tx.delete_assignment(assignment_id)
        logger.info("Role assignment revoked: id=%s user=%s scope=%s", assignment_id, a.user_id, a.scope)
        return a

    def expire_assignment(self, ctx: OpContext, assignment_id: str, scope: Optional[ScopeRef] = None) -> bool:
        """Soft-expire an assignment now. Returns False if it had already expired."""
        with self.store.transaction(ctx) as tx:
            self._load_anchored(tx, assignment_id, scope)
            return tx.expire_assignment(assignment_id)

    # ---- placeholder identities ----

    def transfer_placeholder_assignments(
        self,
        ctx: OpContext,
        placeholder_identity: str,
        real_user_id: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
    ) -> int:
        """
        Re-key every assignment held by `placeholder_identity` to `real_user_id` and
        delete the placeholder user, atomically. Returns the number of moved grants.
        """
        placeholder = normalize_email(placeholder_identity)
        if not real_user_id:
            raise InvalidIdentity("real user id is required")
        if placeholder == real_user_id:
            return 0
        with self.store.transaction(ctx) as tx:
            if tx.get_user(real_user_id) is None:
                tx.create_user(real_user_id, email, name)
            moved = tx.transfer_assignments(placeholder, real_user_id)
            tx.delete_user(placeholder)
        logger.info("Placeholder assignments transferred: from=%s to=%s count=%d", placeholder, real_user_id, moved)
        return moved

    def ensure_user(self, ctx: OpContext, identity: VerifiedIdentity) -> int:
        """
        Login hook: make sure a user record exists for a freshly verified identity.

        When a placeholder exists for the identity's email its grants are transferred;
        returns the number of transferred grants (0 otherwise).
        """
        if identity.is_service_account:
            return 0
        email = normalize_email(identity.email) if identity.email else None
        if email and email != identity.user_id:
            placeholder = self.store.get_user(ctx, email)
            if placeholder is not None and placeholder.is_placeholder:
                return self.transfer_placeholder_assignments(
                    ctx, email, identity.user_id, email=identity.email, name=identity.name
                )
        existing = self.store.get_user(ctx, identity.user_id)
        if existing is not None and (existing.email, existing.name) == (identity.email, identity.name):
            return 0
        with self.store.transaction(ctx) as tx:
            if tx.get_user(identity.user_id) is None:
                tx.create_user(identity.user_id, identity.email, identity.name)
            else:
                tx.update_user(identity.user_id, identity.email, identity.name)
        return 0
