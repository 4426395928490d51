"""
Tenant-enforcing reverse proxy for observability backends.

Each backend (logs, metrics) is one TenantProxy built from a BackendSpec. The proxy
never sends a byte upstream until the caller is authenticated, the target project and
resource are parsed from the path, and the caller holds `read` on the project. The
outbound request then carries the project as tenant and a resource-scoped query.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import requests

from controlplane.authz.engine import AuthorizationEngine
from controlplane.context import OpContext
from controlplane.errors import (
    AuthError,
    BackendNotConfigured,
    InvalidInput,
    PermissionDenied,
    ScopeNotFound,
    StoreUnavailable,
    UpstreamUnavailable,
)
from controlplane.models import Action
from controlplane.proxy.query import inject_logql_selector, wrap_promql_and
from controlplane.scope import ScopeRef

logger = logging.getLogger(__name__)

DEFAULT_TENANT_HEADER = "X-Scope-OrgID"
DEFAULT_SCOPE_LABEL = "resource_id"

# Never forwarded upstream: hop-by-hop headers, caller credentials, and anything the
# client could use to pick its own tenant.
_DROP_REQUEST_HEADERS = frozenset(
    {
        "authorization",
        "cookie",
        "host",
        "content-length",
        "accept-encoding",
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
        "x-forwarded-for",
        "x-forwarded-host",
    }
)

# requests decodes compressed bodies, so content-encoding is never passed back.
_PASS_RESPONSE_HEADERS = ("content-type", "cache-control")


@dataclass(frozen=True)
class BackendSpec:
    name: str
    # Native endpoint on the backend that every proxied request is rewritten to.
    query_path: str
    # (query, label, value) -> scoped query
    injector: Callable[[str, str, str], str]
    label: str = DEFAULT_SCOPE_LABEL
    query_param: str = "query"


BACKENDS: Dict[str, BackendSpec] = {
    "logs": BackendSpec(name="logs", query_path="/loki/api/v1/query_range", injector=inject_logql_selector),
    "metrics": BackendSpec(name="metrics", query_path="/prometheus/api/v1/query_range", injector=wrap_promql_and),
}


@dataclass
class ProxyResponse:
    status_code: int
    content: bytes
    headers: Dict[str, str] = field(default_factory=dict)


def extract_scope_ids(path: str) -> Tuple[str, str]:
    """
    Parse `.../projects/{project_id}/resources/{resource_id}/...`.

    Returns (project_id, resource_id). Raises InvalidInput when either segment is
    missing or out of order.
    """
    parts = (path or "").split("/")
    project_id = ""
    resource_id = ""
    for i, part in enumerate(parts):
        if part == "projects" and i + 1 < len(parts) and not resource_id:
            project_id = parts[i + 1].strip()
        if part == "resources" and i + 1 < len(parts):
            resource_id = parts[i + 1].strip()
            break
    if not project_id or not resource_id:
        raise InvalidInput("path must contain /projects/{project_id}/resources/{resource_id}")
    return project_id, resource_id


class TenantProxy:
    def __init__(
        self,
        spec: BackendSpec,
        base_url: Optional[str],
        engine: AuthorizationEngine,
        *,
        tenant_header: str = DEFAULT_TENANT_HEADER,
        authz_timeout_s: float = 2.0,
        upstream_timeout_s: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.spec = spec
        self.base_url = (base_url or "").rstrip("/") or None
        self.engine = engine
        self.tenant_header = tenant_header
        self.authz_timeout_s = authz_timeout_s
        self.upstream_timeout_s = upstream_timeout_s
        self._session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return self.base_url is not None

    def authorize(self, ctx: OpContext, user_id: Optional[str], project_id: str) -> None:
        """
        Gate on `read` at the project scope; resources inherit from their project.

        Any failure (denial, unknown project, store error, timeout) raises
        PermissionDenied so the caller cannot tell them apart.
        """
        check_ctx = ctx.with_timeout(self.authz_timeout_s)
        scope = ScopeRef.project(project_id)
        try:
            allowed = self.engine.check_permission(check_ctx, user_id or "", Action.READ, scope)
        except ScopeNotFound as e:
            logger.info("[%s] project not found: user=%s project=%s", self.spec.name, user_id, project_id)
            raise PermissionDenied("forbidden") from e
        except StoreUnavailable as e:
            logger.warning("[%s] authorization unavailable: user=%s project=%s err=%s", self.spec.name, user_id, project_id, str(e))
            raise PermissionDenied("forbidden") from e
        if not allowed:
            raise PermissionDenied("forbidden")

    def rewrite_params(self, params: Sequence[Tuple[str, str]], resource_id: str) -> List[Tuple[str, str]]:
        qp = self.spec.query_param
        queries = [v for k, v in params if k == qp]
        if len(queries) > 1:
            raise InvalidInput(f"only one '{qp}' parameter is allowed")
        out: List[Tuple[str, str]] = []
        for k, v in params:
            if k == qp:
                v = self.spec.injector(v, self.spec.label, resource_id)
            out.append((k, v))
        return out

    def outbound_headers(self, headers: Mapping[str, str], project_id: str) -> Dict[str, str]:
        drop = _DROP_REQUEST_HEADERS | {self.tenant_header.lower()}
        out = {k: v for k, v in headers.items() if k.lower() not in drop}
        out[self.tenant_header] = project_id
        return out

    def forward(
        self,
        ctx: OpContext,
        user_id: Optional[str],
        path: str,
        params: Sequence[Tuple[str, str]],
        headers: Mapping[str, str],
    ) -> ProxyResponse:
        if not self.configured:
            raise BackendNotConfigured(f"{self.spec.name} backend not configured")
        if not user_id:
            raise AuthError("unauthenticated")

        project_id, resource_id = extract_scope_ids(path)
        self.authorize(ctx, user_id, project_id)

        out_params = self.rewrite_params(params, resource_id)
        out_headers = self.outbound_headers(headers, project_id)
        url = f"{self.base_url}{self.spec.query_path}"

        ctx.check()
        try:
            resp = self._session.get(url, params=out_params, headers=out_headers, timeout=self.upstream_timeout_s)
        except requests.exceptions.Timeout as e:
            logger.warning("[%s] upstream timeout: %s", self.spec.name, url)
            raise UpstreamUnavailable(f"{self.spec.name} backend timed out") from e
        except requests.exceptions.RequestException as e:
            logger.warning("[%s] upstream error: %s err=%s", self.spec.name, url, str(e))
            raise UpstreamUnavailable(f"{self.spec.name} backend unreachable") from e

        if resp.status_code >= 500:
            logger.warning("[%s] upstream status=%d url=%s", self.spec.name, resp.status_code, url)
            raise UpstreamUnavailable(f"{self.spec.name} backend failed (status={resp.status_code})")

        logger.info(
            "[%s] proxied: user=%s project=%s resource=%s status=%d",
            self.spec.name,
            user_id,
            project_id,
            resource_id,
            resp.status_code,
        )
        passed = {k: resp.headers[k] for k in _PASS_RESPONSE_HEADERS if k in resp.headers}
        return ProxyResponse(status_code=resp.status_code, content=resp.content, headers=passed)


def build_proxies(
    engine: AuthorizationEngine,
    urls: Mapping[str, Optional[str]],
    *,
    tenant_header: str = DEFAULT_TENANT_HEADER,
    authz_timeout_s: float = 2.0,
    upstream_timeout_s: float = 30.0,
    session: Optional[requests.Session] = None,
) -> Dict[str, TenantProxy]:
    """One TenantProxy per entry in BACKENDS; a missing URL leaves that proxy unconfigured."""
    return {
        name: TenantProxy(
            spec,
            urls.get(name),
            engine,
            tenant_header=tenant_header,
            authz_timeout_s=authz_timeout_s,
            upstream_timeout_s=upstream_timeout_s,
            session=session,
        )
        for name, spec in BACKENDS.items()
    }
