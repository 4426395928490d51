from __future__ import annotations

import time

import pytest
import requests

from controlplane.authz.engine import AuthorizationEngine
from controlplane.context import OpContext
from controlplane.errors import (
    AuthError,
    BackendNotConfigured,
    InvalidInput,
    PermissionDenied,
    StoreUnavailable,
    UpstreamUnavailable,
)
from controlplane.models import VIEWER_ROLE
from controlplane.proxy.tenant import BACKENDS, TenantProxy, extract_scope_ids
from controlplane.scope import ScopeRef


class _Resp:
    def __init__(self, status_code: int = 200, content: bytes = b'{"status":"success"}') -> None:
        self.status_code = status_code
        self.content = content
        self.headers = {"content-type": "application/json", "content-encoding": "gzip"}


class _Session:
    def __init__(self, resp=None, exc=None) -> None:  # type: ignore[no-untyped-def]
        self.calls = []
        self.resp = resp or _Resp()
        self.exc = exc

    def get(self, url, params=None, headers=None, timeout=None):  # type: ignore[no-untyped-def]
        self.calls.append({"url": url, "params": params, "headers": headers, "timeout": timeout})
        if self.exc is not None:
            raise self.exc
        return self.resp


@pytest.fixture
def reader(manager, ctx, tree):  # type: ignore[no-untyped-def]
    """A user with Viewer on proj-a only."""
    with manager.store.transaction(ctx) as tx:
        tx.create_user("reader", None, None)
    manager.assign_role(ctx, "reader", VIEWER_ROLE, ScopeRef.project("proj-a"), "root")
    return "reader"


def _proxy(engine, name: str = "logs", session=None, url: str = "http://loki:3100"):  # type: ignore[no-untyped-def]
    return TenantProxy(BACKENDS[name], url, engine, session=session or _Session())


@pytest.mark.parametrize(
    "path,expected",
    [
        ("/api/v1/projects/p1/resources/r1/logs", ("p1", "r1")),
        ("/api/v1/projects/p1/resources/r1/metrics/query_range", ("p1", "r1")),
        ("/x/projects/p1/resources/r1", ("p1", "r1")),
    ],
)
def test_extract_scope_ids(path: str, expected) -> None:  # type: ignore[no-untyped-def]
    assert extract_scope_ids(path) == expected


@pytest.mark.parametrize(
    "path",
    [
        "/api/v1/projects/p1/logs",
        "/api/v1/resources/r1/logs",
        "/api/v1/projects//resources/r1/logs",
        "/api/v1/projects/p1/resources/",
        "/api/v1/resources/r1/projects/p1",
    ],
)
def test_extract_scope_ids_rejects(path: str) -> None:
    with pytest.raises(InvalidInput):
        extract_scope_ids(path)


def test_isolation_between_projects(engine, ctx, reader) -> None:
    session = _Session()
    proxy = _proxy(engine, session=session)

    with pytest.raises(PermissionDenied):
        proxy.forward(ctx, reader, "/api/v1/projects/proj-b/resources/res-b1/logs", [("query", '{app="x"}')], {})
    assert session.calls == []

    resp = proxy.forward(
        ctx, reader, "/api/v1/projects/proj-a/resources/res-a1/logs", [("query", '{app="x"}'), ("limit", "100")], {}
    )
    assert resp.status_code == 200
    assert len(session.calls) == 1
    call = session.calls[0]
    assert call["url"] == "http://loki:3100/loki/api/v1/query_range"
    assert call["headers"]["X-Scope-OrgID"] == "proj-a"
    assert call["params"] == [("query", '{resource_id="res-a1", app="x"}'), ("limit", "100")]


def test_metrics_backend_uses_promql_wrapper(engine, ctx, reader) -> None:
    session = _Session()
    proxy = _proxy(engine, "metrics", session=session, url="http://mimir/")
    proxy.forward(ctx, reader, "/api/v1/projects/proj-a/resources/res-a2/metrics/query_range", [("query", "up")], {})
    call = session.calls[0]
    assert call["url"] == "http://mimir/prometheus/api/v1/query_range"
    assert call["params"] == [("query", '(up) and {resource_id="res-a2"}')]


def test_client_tenant_and_credentials_are_stripped(engine, ctx, reader) -> None:
    session = _Session()
    proxy = _proxy(engine, session=session)
    proxy.forward(
        ctx,
        reader,
        "/api/v1/projects/proj-a/resources/res-a1/logs",
        [],
        {
            "x-scope-orgid": "proj-b",
            "Authorization": "Bearer secret",
            "Cookie": "session=1",
            "Accept": "application/json",
        },
    )
    headers = session.calls[0]["headers"]
    assert headers == {"Accept": "application/json", "X-Scope-OrgID": "proj-a"}


def test_unauthenticated_is_rejected_before_anything(engine, ctx, tree) -> None:
    session = _Session()
    with pytest.raises(AuthError):
        _proxy(engine, session=session).forward(ctx, None, "/api/v1/projects/proj-a/resources/res-a1/logs", [], {})
    assert session.calls == []


def test_unknown_project_looks_like_denial(engine, ctx, reader) -> None:
    session = _Session()
    with pytest.raises(PermissionDenied) as ei:
        _proxy(engine, session=session).forward(ctx, reader, "/api/v1/projects/ghost/resources/r/logs", [], {})
    assert str(ei.value) == "forbidden"
    assert session.calls == []


def test_unconfigured_backend(engine, ctx, reader) -> None:
    proxy = TenantProxy(BACKENDS["logs"], None, engine)
    assert proxy.configured is False
    with pytest.raises(BackendNotConfigured):
        proxy.forward(ctx, reader, "/api/v1/projects/proj-a/resources/res-a1/logs", [], {})


def test_duplicate_query_params_rejected(engine, ctx, reader) -> None:
    session = _Session()
    with pytest.raises(InvalidInput):
        _proxy(engine, session=session).forward(
            ctx, reader, "/api/v1/projects/proj-a/resources/res-a1/logs", [("query", "{}"), ("query", "{}")], {}
        )
    assert session.calls == []


def test_upstream_failures_are_bad_gateway_not_denial(engine, ctx, reader) -> None:
    path = "/api/v1/projects/proj-a/resources/res-a1/logs"
    with pytest.raises(UpstreamUnavailable):
        _proxy(engine, session=_Session(exc=requests.exceptions.ConnectionError("refused"))).forward(ctx, reader, path, [], {})
    with pytest.raises(UpstreamUnavailable):
        _proxy(engine, session=_Session(exc=requests.exceptions.Timeout("slow"))).forward(ctx, reader, path, [], {})
    with pytest.raises(UpstreamUnavailable):
        _proxy(engine, session=_Session(resp=_Resp(status_code=503))).forward(ctx, reader, path, [], {})


def test_upstream_client_errors_pass_through(engine, ctx, reader) -> None:
    resp = _proxy(engine, session=_Session(resp=_Resp(status_code=400, content=b"parse error"))).forward(
        ctx, reader, "/api/v1/projects/proj-a/resources/res-a1/logs", [("query", "{}")], {}
    )
    assert resp.status_code == 400
    assert resp.content == b"parse error"
    assert resp.headers == {"content-type": "application/json"}


def test_store_failure_during_check_is_forbidden(ctx) -> None:
    class _DownStore:
        def parent_of(self, _ctx, _scope):  # type: ignore[no-untyped-def]
            raise StoreUnavailable("db down")

    session = _Session()
    proxy = _proxy(AuthorizationEngine(_DownStore()), session=session)  # type: ignore[arg-type]
    with pytest.raises(PermissionDenied):
        proxy.forward(ctx, "u1", "/api/v1/projects/p/resources/r/logs", [], {})
    assert session.calls == []


def test_permission_check_is_time_bounded(ctx) -> None:
    seen = {}

    class _Engine:
        def check_permission(self, c, _user, _action, _scope):  # type: ignore[no-untyped-def]
            seen["remaining"] = c.remaining()
            return True

    proxy = TenantProxy(BACKENDS["logs"], "http://loki", _Engine(), authz_timeout_s=0.5, session=_Session())  # type: ignore[arg-type]
    proxy.forward(OpContext.background(), "u1", "/api/v1/projects/p/resources/r/logs", [], {})
    assert seen["remaining"] is not None
    assert seen["remaining"] <= 0.5


def test_slow_check_cannot_outlive_its_deadline(ctx) -> None:
    class _SlowEngine:
        def check_permission(self, c, _user, _action, _scope):  # type: ignore[no-untyped-def]
            time.sleep(0.05)
            c.check()
            return True

    session = _Session()
    proxy = TenantProxy(BACKENDS["logs"], "http://loki", _SlowEngine(), authz_timeout_s=0.01, session=session)  # type: ignore[arg-type]
    with pytest.raises(PermissionDenied):
        proxy.forward(OpContext.background(), "u1", "/api/v1/projects/p/resources/r/logs", [], {})
    assert session.calls == []
