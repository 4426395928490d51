from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone

import pytest

from controlplane.context import OpContext
from controlplane.errors import DeadlineExceeded, ScopeNotFound, StoreUnavailable
from controlplane.scope import ScopeRef
from controlplane.store.postgres import PostgresStore

_T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


class _Cursor:
    def __init__(self, rows, rowcount: int = 0) -> None:  # type: ignore[no-untyped-def]
        self._rows = rows
        self.rowcount = rowcount

    def fetchall(self):  # type: ignore[no-untyped-def]
        return list(self._rows)

    def fetchone(self):  # type: ignore[no-untyped-def]
        return self._rows[0] if self._rows else None


class _Conn:
    def __init__(self, responses=None) -> None:  # type: ignore[no-untyped-def]
        self.calls = []
        self.responses = list(responses or [])
        self.transactions = 0

    def execute(self, sql: str, params=()):  # type: ignore[no-untyped-def]
        self.calls.append((sql, params))
        if "set_config" in sql:
            return _Cursor([])
        if self.responses:
            return self.responses.pop(0)
        return _Cursor([])

    @contextmanager
    def transaction(self):  # type: ignore[no-untyped-def]
        self.transactions += 1
        yield

    def sql(self):  # type: ignore[no-untyped-def]
        return [c[0] for c in self.calls if "set_config" not in c[0]]


class _Pool:
    def __init__(self, conn: _Conn) -> None:
        self.conn = conn
        self.timeouts = []

    @contextmanager
    def connection(self, timeout=None):  # type: ignore[no-untyped-def]
        self.timeouts.append(timeout)
        yield self.conn

    def close(self) -> None:
        return None


def _store(conn: _Conn, **kwargs) -> PostgresStore:  # type: ignore[no-untyped-def]
    return PostgresStore(_Pool(conn), **kwargs)  # type: ignore[arg-type]


def test_active_assignments_filters_expiry_in_sql() -> None:
    row = ("a1", "u1", "r1", "project", "p1", "root", _T0, None)
    conn = _Conn([_Cursor([row])])
    out = _store(conn).active_assignments(OpContext.background(), "u1")
    assert out[0].scope == ScopeRef.project("p1")
    sql, params = conn.calls[0]
    assert "expires_at IS NULL OR expires_at > NOW()" in sql
    assert params == ("u1",)


def test_active_assignments_at_binds_scope() -> None:
    conn = _Conn([_Cursor([])])
    _store(conn).active_assignments_at(OpContext.background(), ScopeRef.resource("r9"))
    sql, params = conn.calls[0]
    assert "scope_type = %s AND scope_id = %s" in sql
    assert "expires_at IS NULL OR expires_at > NOW()" in sql
    assert params == ("resource", "r9")


def test_projects_for_user_counts_org_grants() -> None:
    row = ("p1", "o1", "Proj", None, _T0, _T0)
    conn = _Conn([_Cursor([row])])
    out = _store(conn).projects_for_user(OpContext.background(), "u1")
    assert [p.project_id for p in out] == ["p1"]
    assert out[0].description == ""
    sql, params = conn.calls[0]
    assert "ra.expires_at IS NULL OR ra.expires_at > NOW()" in sql
    assert "ra.scope_type = 'organization' AND ra.scope_id = p.org_id" in sql
    assert params == (None, None, "u1")


def test_organizations_for_user_filters_expiry() -> None:
    conn = _Conn([_Cursor([("o1", "Org", _T0, _T0)])])
    out = _store(conn).organizations_for_user(OpContext.background(), "u1")
    assert [o.org_id for o in out] == ["o1"]
    sql, params = conn.calls[0]
    assert "ra.expires_at IS NULL OR ra.expires_at > NOW()" in sql
    assert params == ("u1",)


def test_parent_of_is_single_hop() -> None:
    conn = _Conn([_Cursor([("p1",)])])
    parent = _store(conn).parent_of(OpContext.background(), ScopeRef.resource("r1"))
    assert parent == ScopeRef.project("p1")
    sql, params = conn.calls[0]
    assert "FROM resources" in sql
    assert "JOIN" not in sql
    assert params == ("r1",)


def test_parent_of_missing_scope() -> None:
    conn = _Conn([_Cursor([])])
    with pytest.raises(ScopeNotFound):
        _store(conn).parent_of(OpContext.background(), ScopeRef.project("ghost"))


def test_parent_of_organization_is_none() -> None:
    conn = _Conn([_Cursor([(None,)])])
    assert _store(conn).parent_of(OpContext.background(), ScopeRef.organization("o1")) is None


def test_role_permissions_are_cached() -> None:
    rows = [("perm-1", "controlplane", "read")]
    conn = _Conn([_Cursor(rows)])
    store = _store(conn, role_cache_ttl_seconds=300.0)
    ctx = OpContext.background()
    first = store.permissions_for_role(ctx, "role-1")
    second = store.permissions_for_role(ctx, "role-1")
    assert first == second
    assert {p.action for p in first} == {"read"}
    assert len(conn.sql()) == 1


def test_deadline_is_pushed_down_as_statement_timeout() -> None:
    conn = _Conn([_Cursor([])])
    store = _store(conn, pool_timeout_seconds=10.0)
    store.list_roles(OpContext.with_deadline_in(5.0))
    set_cfg = [c for c in conn.calls if "set_config" in c[0]]
    assert len(set_cfg) == 1
    assert "statement_timeout" in set_cfg[0][0]
    ms = int(set_cfg[0][1][0].rstrip("ms"))
    assert 0 < ms <= 5000
    # Pool acquisition is bounded by the remaining deadline too.
    assert store._pool.timeouts[0] <= 5.0


def test_no_deadline_means_no_statement_timeout() -> None:
    conn = _Conn([_Cursor([])])
    _store(conn).list_roles(OpContext.background())
    assert not [c for c in conn.calls if "set_config" in c[0]]


def test_insert_assignment_is_idempotent_in_sql() -> None:
    conn = _Conn([_Cursor([])])
    store = _store(conn)
    with store.transaction(OpContext.background()) as tx:
        out = tx.insert_assignment(
            assignment_id="a1",
            user_id="u1",
            role_id="r1",
            scope=ScopeRef.project("p1"),
            assigned_by="root",
            expires_at=None,
        )
    assert out is None
    assert conn.transactions == 1
    sql = conn.sql()[0]
    assert "ON CONFLICT (user_id, role_id, scope_type, scope_id) DO UPDATE" in sql
    # Only a lapsed row is reactivated; an active duplicate stays a no-op.
    assert "WHERE role_assignments.expires_at IS NOT NULL" in sql
    assert "role_assignments.expires_at <= NOW()" in sql


def test_transfer_removes_duplicates_before_rekey() -> None:
    conn = _Conn([_Cursor([], rowcount=0), _Cursor([], rowcount=1), _Cursor([], rowcount=2)])
    store = _store(conn)
    with store.transaction(OpContext.background()) as tx:
        moved = tx.transfer_assignments("new@example.com", "auth0|1")
    assert moved == 2
    drop_expired_sql, drop_dup_sql, update_sql = conn.sql()
    assert drop_expired_sql.strip().startswith("DELETE FROM role_assignments dst")
    assert "dst.expires_at <= NOW()" in drop_expired_sql
    assert conn.calls[0][1] == ("auth0|1", "new@example.com")
    assert drop_dup_sql.strip().startswith("DELETE FROM role_assignments src")
    assert update_sql.strip().startswith("UPDATE role_assignments")
    assert conn.calls[-1][1] == ("auth0|1", "new@example.com")


def test_pool_timeout_maps_to_store_unavailable() -> None:
    from psycopg_pool import PoolTimeout

    class _SlowPool(_Pool):
        @contextmanager
        def connection(self, timeout=None):  # type: ignore[no-untyped-def]
            raise PoolTimeout("no connection")
            yield  # pragma: no cover

    store = PostgresStore(_SlowPool(_Conn()))  # type: ignore[arg-type]
    with pytest.raises(StoreUnavailable):
        store.list_roles(OpContext.background())


def test_query_canceled_maps_to_deadline_exceeded() -> None:
    from psycopg import errors as pg_errors

    class _CancelConn(_Conn):
        def execute(self, sql: str, params=()):  # type: ignore[no-untyped-def]
            if "set_config" in sql:
                return _Cursor([])
            raise pg_errors.QueryCanceled("canceling statement due to statement timeout")

    store = _store(_CancelConn())
    with pytest.raises(DeadlineExceeded):
        store.active_assignments(OpContext.with_deadline_in(1.0), "u1")


def test_expired_context_never_touches_pool() -> None:
    conn = _Conn()
    store = _store(conn)
    with pytest.raises(DeadlineExceeded):
        store.list_roles(OpContext(deadline=0.0))
    assert store._pool.timeouts == []
