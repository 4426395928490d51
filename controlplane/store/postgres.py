"""
Postgres-backed permission store (psycopg 3 + psycopg_pool).

Each logical operation (one read, or one multi-statement transaction) borrows a pooled
connection and returns it as soon as the operation finishes. Expiry is always evaluated
with the database clock (`NOW()`), so writers and readers agree regardless of host clock
skew.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterator, List, Optional, Sequence, Tuple

import psycopg
from psycopg import errors as pg_errors
from psycopg_pool import ConnectionPool, PoolTimeout

from controlplane.config import DatabaseConfig, build_postgres_dsn
from controlplane.context import OpContext
from controlplane.errors import AlreadyExists, DeadlineExceeded, NotFound, ScopeNotFound, StoreUnavailable
from controlplane.models import Organization, Permission, Project, Resource, Role, RoleAssignment, User
from controlplane.scope import ScopeRef, ScopeType

logger = logging.getLogger(__name__)

_ASSIGNMENT_COLUMNS = """
  assignment_id, user_id, role_id, scope_type, scope_id, assigned_by, created_at, expires_at
"""

# Single-hop parent lookups; organizations only need an existence check.
_PARENT_SQL: Dict[ScopeType, str] = {
    ScopeType.ORGANIZATION: "SELECT NULL FROM organizations WHERE org_id = %s;",
    ScopeType.PROJECT: "SELECT org_id FROM projects WHERE project_id = %s;",
    ScopeType.RESOURCE: "SELECT project_id FROM resources WHERE resource_id = %s;",
}


def _row_to_assignment(row: Sequence[Any]) -> RoleAssignment:
    assignment_id, user_id, role_id, scope_type, scope_id, assigned_by, created_at, expires_at = row
    return RoleAssignment(
        assignment_id=str(assignment_id),
        user_id=str(user_id),
        role_id=str(role_id),
        scope=ScopeRef(ScopeType(str(scope_type)), str(scope_id)),
        assigned_by=str(assigned_by) if assigned_by else None,
        created_at=created_at,
        expires_at=expires_at,
    )


def _apply_deadline(conn: psycopg.Connection, ctx: OpContext) -> None:
    """Push the context deadline down to the server for the current transaction."""
    remaining = ctx.remaining()
    if remaining is None:
        return
    ms = max(1, int(remaining * 1000))
    conn.execute("SELECT set_config('statement_timeout', %s, true);", (f"{ms}ms",))


class PostgresTransaction:
    def __init__(self, conn: psycopg.Connection, ctx: OpContext) -> None:
        self._conn = conn
        self._ctx = ctx

    def _execute(self, sql: str, params: Tuple[Any, ...] = ()) -> psycopg.Cursor:
        self._ctx.check()
        return self._conn.execute(sql, params)

    def scope_exists(self, scope: ScopeRef) -> bool:
        row = self._execute(_PARENT_SQL[scope.scope_type], (scope.scope_id,)).fetchone()
        return row is not None

    def insert_organization(self, org_id: str, name: str) -> Organization:
        try:
            row = self._execute(
                """
                INSERT INTO organizations (org_id, name, created_at, updated_at)
                VALUES (%s, %s, NOW(), NOW())
                RETURNING created_at, updated_at;
                """,
                (org_id, name),
            ).fetchone()
        except pg_errors.UniqueViolation as e:
            raise AlreadyExists(f"organization already exists: {org_id}") from e
        return Organization(org_id=org_id, name=name, created_at=row[0], updated_at=row[1])

    def insert_project(self, project_id: str, org_id: str, name: str, description: str) -> Project:
        try:
            row = self._execute(
                """
                INSERT INTO projects (project_id, org_id, name, description, created_at, updated_at)
                VALUES (%s, %s, %s, %s, NOW(), NOW())
                RETURNING created_at, updated_at;
                """,
                (project_id, org_id, name, description),
            ).fetchone()
        except pg_errors.UniqueViolation as e:
            raise AlreadyExists(f"project already exists: {project_id}") from e
        except pg_errors.ForeignKeyViolation as e:
            raise ScopeNotFound(ScopeType.ORGANIZATION.value, org_id) from e
        return Project(
            project_id=project_id,
            org_id=org_id,
            name=name,
            description=description,
            created_at=row[0],
            updated_at=row[1],
        )

    def insert_resource(self, resource_id: str, project_id: str, name: str, resource_type: str) -> Resource:
        try:
            row = self._execute(
                """
                INSERT INTO resources (resource_id, project_id, name, resource_type, created_at, updated_at)
                VALUES (%s, %s, %s, %s, NOW(), NOW())
                RETURNING created_at, updated_at;
                """,
                (resource_id, project_id, name, resource_type),
            ).fetchone()
        except pg_errors.UniqueViolation as e:
            raise AlreadyExists(f"resource already exists: {resource_id}") from e
        except pg_errors.ForeignKeyViolation as e:
            raise ScopeNotFound(ScopeType.PROJECT.value, project_id) from e
        return Resource(
            resource_id=resource_id,
            project_id=project_id,
            name=name,
            resource_type=resource_type,
            created_at=row[0],
            updated_at=row[1],
        )

    def role_by_name(self, name: str) -> Optional[Role]:
        row = self._execute(
            "SELECT role_id, name, display_name, is_system, description FROM roles WHERE name = %s;",
            (name,),
        ).fetchone()
        if not row:
            return None
        return Role(role_id=str(row[0]), name=row[1], display_name=row[2], is_system=bool(row[3]), description=row[4])

    def get_user(self, user_id: str) -> Optional[User]:
        row = self._execute("SELECT user_id, email, name FROM users WHERE user_id = %s;", (user_id,)).fetchone()
        if not row:
            return None
        return User(user_id=row[0], email=row[1], name=row[2])

    def create_user(self, user_id: str, email: Optional[str], name: Optional[str]) -> None:
        self._execute(
            """
            INSERT INTO users (user_id, email, name, created_at)
            VALUES (%s, %s, %s, NOW())
            ON CONFLICT (user_id) DO NOTHING;
            """,
            (user_id, email, name),
        )

    def update_user(self, user_id: str, email: Optional[str], name: Optional[str]) -> None:
        self._execute(
            """
            UPDATE users
            SET email = COALESCE(%s, email), name = COALESCE(%s, name)
            WHERE user_id = %s;
            """,
            (email, name, user_id),
        )

    def create_placeholder_user(self, email: str) -> None:
        # Placeholder rows use the email as both identifier and email.
        self._execute(
            """
            INSERT INTO users (user_id, email, name, created_at)
            VALUES (%s, %s, %s, NOW())
            ON CONFLICT (user_id) DO NOTHING;
            """,
            (email, email, email.split("@", 1)[0]),
        )

    def delete_user(self, user_id: str) -> int:
        cur = self._execute("DELETE FROM users WHERE user_id = %s;", (user_id,))
        return cur.rowcount

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
        try:
            row = self._execute(
                f"""
                INSERT INTO role_assignments
                  (assignment_id, user_id, role_id, scope_type, scope_id, assigned_by, created_at, expires_at)
                VALUES (%s, %s, %s, %s, %s, %s, NOW(), %s)
                ON CONFLICT (user_id, role_id, scope_type, scope_id) DO UPDATE
                  SET expires_at = EXCLUDED.expires_at,
                      assigned_by = EXCLUDED.assigned_by,
                      updated_at = NOW()
                  WHERE role_assignments.expires_at IS NOT NULL
                    AND role_assignments.expires_at <= NOW()
                RETURNING {_ASSIGNMENT_COLUMNS};
                """,
                (assignment_id, user_id, role_id, scope.scope_type.value, scope.scope_id, assigned_by, expires_at),
            ).fetchone()
        except pg_errors.ForeignKeyViolation as e:
            raise NotFound(f"user not found: {user_id}") from e
        if not row:
            return None
        return _row_to_assignment(row)

    def get_assignment(self, assignment_id: str) -> Optional[RoleAssignment]:
        row = self._execute(
            f"SELECT {_ASSIGNMENT_COLUMNS} FROM role_assignments WHERE assignment_id = %s;",
            (assignment_id,),
        ).fetchone()
        return _row_to_assignment(row) if row else None

    def delete_assignment(self, assignment_id: str) -> bool:
        cur = self._execute("DELETE FROM role_assignments WHERE assignment_id = %s;", (assignment_id,))
        return cur.rowcount > 0

    def expire_assignment(self, assignment_id: str) -> bool:
        cur = self._execute(
            """
            UPDATE role_assignments
            SET expires_at = NOW(), updated_at = NOW()
            WHERE assignment_id = %s
              AND (expires_at IS NULL OR expires_at > NOW());
            """,
            (assignment_id,),
        )
        return cur.rowcount > 0

    def transfer_assignments(self, from_user_id: str, to_user_id: str) -> int:
        # Grants the target already holds would violate the uniqueness constraint. An
        # expired duplicate on the target gives way to the source row; an active one wins.
        self._execute(
            """
            DELETE FROM role_assignments dst
            WHERE dst.user_id = %s
              AND dst.expires_at IS NOT NULL AND dst.expires_at <= NOW()
              AND EXISTS (
                SELECT 1 FROM role_assignments src
                WHERE src.user_id = %s
                  AND src.role_id = dst.role_id
                  AND src.scope_type = dst.scope_type
                  AND src.scope_id = dst.scope_id
              );
            """,
            (to_user_id, from_user_id),
        )
        self._execute(
            """
            DELETE FROM role_assignments src
            WHERE src.user_id = %s
              AND EXISTS (
                SELECT 1 FROM role_assignments dst
                WHERE dst.user_id = %s
                  AND dst.role_id = src.role_id
                  AND dst.scope_type = src.scope_type
                  AND dst.scope_id = src.scope_id
              );
            """,
            (from_user_id, to_user_id),
        )
        cur = self._execute(
            """
            UPDATE role_assignments
            SET user_id = %s, updated_at = NOW()
            WHERE user_id = %s;
            """,
            (to_user_id, from_user_id),
        )
        return cur.rowcount


class PostgresStore:
    def __init__(
        self,
        pool: ConnectionPool,
        *,
        pool_timeout_seconds: float = 10.0,
        role_cache_ttl_seconds: float = 300.0,
    ) -> None:
        self._pool = pool
        self._pool_timeout = pool_timeout_seconds
        self._role_cache_ttl = role_cache_ttl_seconds
        self._role_cache: Dict[str, Tuple[float, FrozenSet[Permission]]] = {}
        self._role_cache_lock = threading.Lock()

    @classmethod
    def from_config(cls, cfg: DatabaseConfig) -> "PostgresStore":
        dsn = build_postgres_dsn(cfg)
        if not dsn:
            raise StoreUnavailable("Postgres not configured (set POSTGRES_DSN or POSTGRES_* env vars)")
        pool = ConnectionPool(
            dsn,
            min_size=cfg.pool_min_size,
            max_size=cfg.pool_max_size,
            timeout=cfg.pool_timeout_seconds,
            open=True,
        )
        return cls(
            pool,
            pool_timeout_seconds=cfg.pool_timeout_seconds,
            role_cache_ttl_seconds=cfg.role_cache_ttl_seconds,
        )

    def close(self) -> None:
        self._pool.close()

    @contextmanager
    def _connection(self, ctx: OpContext) -> Iterator[psycopg.Connection]:
        ctx.check()
        remaining = ctx.remaining()
        timeout = self._pool_timeout if remaining is None else min(self._pool_timeout, max(remaining, 0.001))
        try:
            with self._pool.connection(timeout=timeout) as conn:
                yield conn
        except PoolTimeout as e:
            raise StoreUnavailable("timed out waiting for a database connection") from e
        except pg_errors.QueryCanceled as e:
            raise DeadlineExceeded("database statement cancelled (deadline exceeded)") from e
        except psycopg.OperationalError as e:
            logger.warning("Postgres operational error: %s", str(e))
            raise StoreUnavailable("database unavailable") from e

    def _fetchall(self, ctx: OpContext, sql: str, params: Tuple[Any, ...]) -> List[Tuple[Any, ...]]:
        with self._connection(ctx) as conn:
            _apply_deadline(conn, ctx)
            ctx.check()
            return conn.execute(sql, params).fetchall()

    @contextmanager
    def transaction(self, ctx: OpContext) -> Iterator[PostgresTransaction]:
        with self._connection(ctx) as conn:
            with conn.transaction():
                _apply_deadline(conn, ctx)
                yield PostgresTransaction(conn, ctx)

    def permissions_for_role(self, ctx: OpContext, role_id: str) -> FrozenSet[Permission]:
        now = time.monotonic()
        with self._role_cache_lock:
            cached = self._role_cache.get(role_id)
        if cached is not None and now - cached[0] < self._role_cache_ttl:
            return cached[1]

        rows = self._fetchall(
            ctx,
            """
            SELECT p.permission_id, p.resource_type, p.action
            FROM role_permissions rp
            JOIN permissions p ON rp.permission_id = p.permission_id
            WHERE rp.role_id = %s;
            """,
            (role_id,),
        )
        perms = frozenset(Permission(permission_id=str(r[0]), resource_type=r[1], action=r[2]) for r in rows)
        with self._role_cache_lock:
            self._role_cache[role_id] = (now, perms)
        return perms

    def active_assignments(self, ctx: OpContext, user_id: str) -> List[RoleAssignment]:
        rows = self._fetchall(
            ctx,
            f"""
            SELECT {_ASSIGNMENT_COLUMNS}
            FROM role_assignments
            WHERE user_id = %s
              AND (expires_at IS NULL OR expires_at > NOW())
            ORDER BY created_at DESC;
            """,
            (user_id,),
        )
        return [_row_to_assignment(r) for r in rows]

    def active_assignments_at(self, ctx: OpContext, scope: ScopeRef) -> List[RoleAssignment]:
        rows = self._fetchall(
            ctx,
            f"""
            SELECT {_ASSIGNMENT_COLUMNS}
            FROM role_assignments
            WHERE scope_type = %s AND scope_id = %s
              AND (expires_at IS NULL OR expires_at > NOW())
            ORDER BY created_at DESC;
            """,
            (scope.scope_type.value, scope.scope_id),
        )
        return [_row_to_assignment(r) for r in rows]

    def parent_of(self, ctx: OpContext, scope: ScopeRef) -> Optional[ScopeRef]:
        rows = self._fetchall(ctx, _PARENT_SQL[scope.scope_type], (scope.scope_id,))
        if not rows:
            raise ScopeNotFound(scope.scope_type.value, scope.scope_id)
        parent_type = scope.scope_type.parent_type
        if parent_type is None:
            return None
        return ScopeRef(parent_type, str(rows[0][0]))

    def list_roles(self, ctx: OpContext) -> List[Role]:
        rows = self._fetchall(
            ctx,
            """
            SELECT role_id, name, display_name, is_system, description
            FROM roles
            ORDER BY display_order ASC, display_name ASC;
            """,
            (),
        )
        return [Role(role_id=str(r[0]), name=r[1], display_name=r[2], is_system=bool(r[3]), description=r[4]) for r in rows]

    def role_by_name(self, ctx: OpContext, name: str) -> Optional[Role]:
        with self.transaction(ctx) as tx:
            return tx.role_by_name(name)

    def get_user(self, ctx: OpContext, user_id: str) -> Optional[User]:
        with self.transaction(ctx) as tx:
            return tx.get_user(user_id)

    def organizations_for_user(self, ctx: OpContext, user_id: str) -> List[Organization]:
        rows = self._fetchall(
            ctx,
            """
            SELECT DISTINCT o.org_id, o.name, o.created_at, o.updated_at
            FROM organizations o
            JOIN role_assignments ra ON ra.scope_id = o.org_id AND ra.scope_type = 'organization'
            WHERE ra.user_id = %s
              AND (ra.expires_at IS NULL OR ra.expires_at > NOW())
            ORDER BY o.name;
            """,
            (user_id,),
        )
        return [Organization(org_id=r[0], name=r[1], created_at=r[2], updated_at=r[3]) for r in rows]

    def projects_for_user(self, ctx: OpContext, user_id: str, org_id: Optional[str] = None) -> List[Project]:
        # Grants on the parent organization count as access to every project in it.
        rows = self._fetchall(
            ctx,
            """
            SELECT p.project_id, p.org_id, p.name, p.description, p.created_at, p.updated_at
            FROM projects p
            WHERE (%s::text IS NULL OR p.org_id = %s)
              AND EXISTS (
                SELECT 1 FROM role_assignments ra
                WHERE ra.user_id = %s
                  AND (ra.expires_at IS NULL OR ra.expires_at > NOW())
                  AND (
                    (ra.scope_type = 'project' AND ra.scope_id = p.project_id)
                    OR (ra.scope_type = 'organization' AND ra.scope_id = p.org_id)
                  )
              )
            ORDER BY p.name;
            """,
            (org_id, org_id, user_id),
        )
        return [
            Project(project_id=r[0], org_id=r[1], name=r[2], description=r[3] or "", created_at=r[4], updated_at=r[5])
            for r in rows
        ]
