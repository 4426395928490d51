"""
Control-plane HTTP API.

Serves role/permission queries, scoped role assignment management and the
tenant-enforcing logs/metrics proxies. The app is built by `create_app()` from
injected collaborators (store, authenticator, proxy config); nothing here is a
process-wide singleton.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from controlplane.auth.base import Authenticator, VerifiedIdentity
from controlplane.auth.deps import authenticate_request
from controlplane.authz.assignments import RoleAssignmentManager
from controlplane.authz.engine import AuthorizationEngine, InheritedAssignment
from controlplane.config import ProxyConfig
from controlplane.context import OpContext
from controlplane.errors import (
    AlreadyExists,
    AuthError,
    BackendNotConfigured,
    ControlPlaneError,
    InvalidInput,
    NotFound,
    OperationCancelled,
    PermissionDenied,
    RoleNotFound,
    ScopeNotFound,
    StoreUnavailable,
    UpstreamUnavailable,
)
from controlplane.models import Action, Organization, Project, Role, RoleAssignment
from controlplane.proxy.tenant import TenantProxy, build_proxies
from controlplane.scope import ScopeRef, parse_scope
from controlplane.store.base import PermissionStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: PermissionStore
    authenticator: Authenticator
    engine: AuthorizationEngine
    manager: RoleAssignmentManager
    proxies: Dict[str, TenantProxy]
    request_timeout_seconds: float

    def context(self) -> OpContext:
        return OpContext.with_deadline_in(self.request_timeout_seconds)


class CreateOrganizationRequest(BaseModel):
    name: str
    id: Optional[str] = None


class CreateProjectRequest(BaseModel):
    org_id: str
    name: str
    description: str = ""
    id: Optional[str] = None


class CreateResourceRequest(BaseModel):
    name: str
    resource_type: str
    id: Optional[str] = None


class AssignRoleRequest(BaseModel):
    user_id: str
    role: str
    expires_at: Optional[datetime] = None


def _is_public_path(path: str) -> bool:
    return path in ("/healthz",)


# Order matters: subclasses before their bases.
_ERROR_STATUS: List[Tuple[type, int, Optional[str]]] = [
    (AuthError, 401, "Unauthorized"),
    (PermissionDenied, 403, "Forbidden"),
    # Only reachable through authorization; never reveal whether the scope exists.
    (ScopeNotFound, 403, "Forbidden"),
    (AlreadyExists, 409, None),
    (NotFound, 404, None),
    (RoleNotFound, 400, None),
    (InvalidInput, 400, None),
    (UpstreamUnavailable, 502, "Bad gateway"),
    (BackendNotConfigured, 503, None),
    (StoreUnavailable, 503, "Service unavailable"),
    (OperationCancelled, 503, "Service unavailable"),
]


def error_status(exc: ControlPlaneError) -> Tuple[int, str]:
    for cls, status, detail in _ERROR_STATUS:
        if isinstance(exc, cls):
            return status, detail or str(exc)
    return 500, "Internal error"


def _role_json(role: Role) -> Dict[str, Any]:
    return {
        "role_id": role.role_id,
        "name": role.name,
        "display_name": role.display_name,
        "description": role.description,
        "is_system": role.is_system,
    }


def _organization_json(org: Organization) -> Dict[str, Any]:
    return {"org_id": org.org_id, "name": org.name, "created_at": org.created_at.isoformat()}


def _project_json(proj: Project) -> Dict[str, Any]:
    return {
        "project_id": proj.project_id,
        "org_id": proj.org_id,
        "name": proj.name,
        "description": proj.description,
        "created_at": proj.created_at.isoformat(),
    }


def _assignment_json(a: RoleAssignment, inherited_from: Optional[ScopeRef] = None) -> Dict[str, Any]:
    return {
        "assignment_id": a.assignment_id,
        "user_id": a.user_id,
        "role_id": a.role_id,
        "scope_type": a.scope.scope_type.value,
        "scope_id": a.scope.scope_id,
        "assigned_by": a.assigned_by,
        "created_at": a.created_at.isoformat() if a.created_at else None,
        "expires_at": a.expires_at.isoformat() if a.expires_at else None,
        "inherited": inherited_from is not None,
        "inherited_from": str(inherited_from) if inherited_from else None,
    }


def create_app(
    *,
    store: PermissionStore,
    authenticator: Authenticator,
    proxy_config: Optional[ProxyConfig] = None,
    request_timeout_seconds: float = 30.0,
    proxy_session: Any = None,
) -> FastAPI:
    engine = AuthorizationEngine(store)
    pcfg = proxy_config
    proxies = build_proxies(
        engine,
        {"logs": pcfg.logs_url if pcfg else None, "metrics": pcfg.metrics_url if pcfg else None},
        tenant_header=pcfg.tenant_header if pcfg else "X-Scope-OrgID",
        authz_timeout_s=pcfg.authz_timeout_seconds if pcfg else 2.0,
        upstream_timeout_s=pcfg.upstream_timeout_seconds if pcfg else 30.0,
        session=proxy_session,
    )
    services = Services(
        store=store,
        authenticator=authenticator,
        engine=engine,
        manager=RoleAssignmentManager(store),
        proxies=proxies,
        request_timeout_seconds=request_timeout_seconds,
    )

    app = FastAPI(title="Control plane API")
    app.state.services = services

    @app.exception_handler(ControlPlaneError)
    async def _control_plane_error(request: Request, exc: ControlPlaneError) -> JSONResponse:
        status, detail = error_status(exc)
        if status >= 500:
            logger.warning("%s %s - %d: %s", request.method, request.url.path, status, str(exc))
        return JSONResponse(status_code=status, content={"detail": detail})

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all incoming HTTP requests and attach the verified identity."""
        start_time = time.time()
        logger.debug("%s %s", request.method, request.url.path)
        try:
            path = request.url.path or ""
            if request.method != "OPTIONS" and not _is_public_path(path):
                # Fail closed: anything not explicitly public requires a verified identity.
                try:
                    request.state.identity = authenticate_request(request, services.authenticator)
                except AuthError as e:
                    logger.info("%s %s - 401: %s", request.method, path, str(e))
                    return JSONResponse(status_code=401, content={"detail": "Unauthorized"})

            response = await call_next(request)
            process_time = time.time() - start_time
            logger.debug("%s %s - %d (%.3fs)", request.method, request.url.path, response.status_code, process_time)
            return response
        except Exception as e:
            process_time = time.time() - start_time
            logger.exception("%s %s - ERROR after %.3fs: %s", request.method, request.url.path, process_time, str(e))
            raise

    def current_identity(request: Request) -> VerifiedIdentity:
        identity = getattr(request.state, "identity", None)
        if identity is None:
            raise AuthError("unauthenticated")
        # First sighting of a verified email picks up any pending invitations.
        services.manager.ensure_user(services.context(), identity)
        return identity

    @app.get("/healthz")
    def healthz() -> Dict[str, Any]:
        return {"ok": True}

    # ---- roles & permissions ----

    @app.get("/api/v1/roles")
    def list_roles(_identity: VerifiedIdentity = Depends(current_identity)) -> Dict[str, Any]:
        roles = services.store.list_roles(services.context())
        return {"roles": [_role_json(r) for r in roles]}

    @app.get("/api/v1/roles/{role_id}/permissions")
    def role_permissions(role_id: str, _identity: VerifiedIdentity = Depends(current_identity)) -> Dict[str, Any]:
        perms = services.store.permissions_for_role(services.context(), role_id)
        items = sorted(({"resource_type": p.resource_type, "action": p.action} for p in perms), key=lambda x: x["action"])
        return {"role_id": role_id, "permissions": items}

    @app.get("/api/v1/permissions")
    def list_permissions(
        scope_type: str = Query(...),
        scope_id: str = Query(...),
        identity: VerifiedIdentity = Depends(current_identity),
    ) -> Dict[str, Any]:
        scope = parse_scope(scope_type, scope_id)
        actions = services.engine.list_permissions(services.context(), identity.user_id, scope)
        return {"scope_type": scope.scope_type.value, "scope_id": scope.scope_id, "actions": sorted(actions)}

    @app.get("/api/v1/permissions/check")
    def check_permission(
        scope_type: str = Query(...),
        scope_id: str = Query(...),
        action: str = Query(...),
        identity: VerifiedIdentity = Depends(current_identity),
    ) -> Dict[str, Any]:
        scope = parse_scope(scope_type, scope_id)
        if action not in Action.ALL:
            raise InvalidInput(f"unknown action: {action!r}")
        try:
            allowed = services.engine.check_permission(services.context(), identity.user_id, action, scope)
        except ScopeNotFound:
            allowed = False
        return {"allowed": allowed}

    @app.get("/api/v1/organizations")
    def list_organizations(identity: VerifiedIdentity = Depends(current_identity)) -> Dict[str, Any]:
        orgs = services.engine.list_accessible_organizations(services.context(), identity.user_id)
        return {"organizations": [_organization_json(o) for o in orgs]}

    @app.get("/api/v1/projects")
    def list_projects(
        org_id: Optional[str] = Query(None),
        identity: VerifiedIdentity = Depends(current_identity),
    ) -> Dict[str, Any]:
        projects = services.engine.list_accessible_projects(services.context(), identity.user_id, org_id=org_id)
        return {"projects": [_project_json(p) for p in projects]}

    # ---- entity creation (bootstrap owner) ----

    @app.post("/api/v1/organizations", status_code=201)
    def create_organization(req: CreateOrganizationRequest, identity: VerifiedIdentity = Depends(current_identity)) -> Dict[str, Any]:
        org = services.manager.create_organization(services.context(), req.name, identity.user_id, org_id=req.id)
        return _organization_json(org)

    @app.post("/api/v1/projects", status_code=201)
    def create_project(req: CreateProjectRequest, identity: VerifiedIdentity = Depends(current_identity)) -> Dict[str, Any]:
        ctx = services.context()
        services.engine.require_permission(ctx, identity.user_id, Action.WRITE, ScopeRef.organization(req.org_id))
        proj = services.manager.create_project(
            ctx, req.org_id, req.name, req.description, identity.user_id, project_id=req.id
        )
        return _project_json(proj)

    @app.post("/api/v1/projects/{project_id}/resources", status_code=201)
    def create_resource(
        project_id: str, req: CreateResourceRequest, identity: VerifiedIdentity = Depends(current_identity)
    ) -> Dict[str, Any]:
        ctx = services.context()
        services.engine.require_permission(ctx, identity.user_id, Action.WRITE, ScopeRef.project(project_id))
        res = services.manager.create_resource(ctx, project_id, req.name, req.resource_type, resource_id=req.id)
        return {
            "resource_id": res.resource_id,
            "project_id": res.project_id,
            "name": res.name,
            "resource_type": res.resource_type,
            "created_at": res.created_at.isoformat(),
        }

    # ---- role assignments (rbac) ----

    def _list_rbac(scope: ScopeRef, identity: VerifiedIdentity) -> Dict[str, Any]:
        ctx = services.context()
        services.engine.require_permission(ctx, identity.user_id, Action.READ, scope)
        rows: List[InheritedAssignment] = services.engine.assignments_with_inheritance(ctx, scope)
        return {
            "scope_type": scope.scope_type.value,
            "scope_id": scope.scope_id,
            "assignments": [_assignment_json(r.assignment, r.inherited_from) for r in rows],
        }

    def _grant(scope: ScopeRef, req: AssignRoleRequest, identity: VerifiedIdentity) -> JSONResponse:
        ctx = services.context()
        services.engine.require_permission(ctx, identity.user_id, Action.MANAGE_ACCESS, scope)
        created = services.manager.assign_role(ctx, req.user_id, req.role, scope, identity.user_id, req.expires_at)
        if created is None:
            return JSONResponse(status_code=200, content={"ok": True, "created": False})
        return JSONResponse(status_code=201, content={"ok": True, "created": True, "assignment": _assignment_json(created)})

    def _revoke(scope: ScopeRef, assignment_id: str, identity: VerifiedIdentity) -> Dict[str, Any]:
        ctx = services.context()
        services.engine.require_permission(ctx, identity.user_id, Action.MANAGE_ACCESS, scope)
        services.manager.revoke_assignment(ctx, assignment_id, scope)
        return {"ok": True}

    @app.get("/api/v1/organizations/{org_id}/rbac")
    def org_rbac(org_id: str, identity: VerifiedIdentity = Depends(current_identity)) -> Dict[str, Any]:
        return _list_rbac(ScopeRef.organization(org_id), identity)

    @app.post("/api/v1/organizations/{org_id}/rbac")
    def org_rbac_grant(org_id: str, req: AssignRoleRequest, identity: VerifiedIdentity = Depends(current_identity)):
        return _grant(ScopeRef.organization(org_id), req, identity)

    @app.delete("/api/v1/organizations/{org_id}/rbac/{assignment_id}")
    def org_rbac_revoke(org_id: str, assignment_id: str, identity: VerifiedIdentity = Depends(current_identity)) -> Dict[str, Any]:
        return _revoke(ScopeRef.organization(org_id), assignment_id, identity)

    @app.get("/api/v1/projects/{project_id}/rbac")
    def project_rbac(project_id: str, identity: VerifiedIdentity = Depends(current_identity)) -> Dict[str, Any]:
        return _list_rbac(ScopeRef.project(project_id), identity)

    @app.post("/api/v1/projects/{project_id}/rbac")
    def project_rbac_grant(project_id: str, req: AssignRoleRequest, identity: VerifiedIdentity = Depends(current_identity)):
        return _grant(ScopeRef.project(project_id), req, identity)

    @app.delete("/api/v1/projects/{project_id}/rbac/{assignment_id}")
    def project_rbac_revoke(
        project_id: str, assignment_id: str, identity: VerifiedIdentity = Depends(current_identity)
    ) -> Dict[str, Any]:
        return _revoke(ScopeRef.project(project_id), assignment_id, identity)

    def _resource_in_project(project_id: str, resource_id: str) -> ScopeRef:
        # The path names both; a resource listed under the wrong project is treated like a missing one.
        scope = ScopeRef.resource(resource_id)
        if services.store.parent_of(services.context(), scope) != ScopeRef.project(project_id):
            raise ScopeNotFound(scope.scope_type.value, resource_id)
        return scope

    @app.get("/api/v1/projects/{project_id}/resources/{resource_id}/rbac")
    def resource_rbac(project_id: str, resource_id: str, identity: VerifiedIdentity = Depends(current_identity)) -> Dict[str, Any]:
        return _list_rbac(_resource_in_project(project_id, resource_id), identity)

    @app.post("/api/v1/projects/{project_id}/resources/{resource_id}/rbac")
    def resource_rbac_grant(
        project_id: str, resource_id: str, req: AssignRoleRequest, identity: VerifiedIdentity = Depends(current_identity)
    ):
        return _grant(_resource_in_project(project_id, resource_id), req, identity)

    @app.delete("/api/v1/projects/{project_id}/resources/{resource_id}/rbac/{assignment_id}")
    def resource_rbac_revoke(
        project_id: str, resource_id: str, assignment_id: str, identity: VerifiedIdentity = Depends(current_identity)
    ) -> Dict[str, Any]:
        return _revoke(_resource_in_project(project_id, resource_id), assignment_id, identity)

    # ---- tenant-enforcing proxies ----

    def _proxy(name: str, request: Request, identity: VerifiedIdentity) -> Response:
        proxy = services.proxies.get(name)
        if proxy is None:
            raise HTTPException(status_code=404, detail="Not found")
        resp = proxy.forward(
            services.context(),
            identity.user_id,
            request.url.path,
            list(request.query_params.multi_items()),
            dict(request.headers),
        )
        return Response(content=resp.content, status_code=resp.status_code, headers=resp.headers)

    @app.get("/api/v1/projects/{project_id}/resources/{resource_id}/logs")
    def logs_proxy(request: Request, project_id: str, resource_id: str, identity: VerifiedIdentity = Depends(current_identity)) -> Response:
        return _proxy("logs", request, identity)

    @app.get("/api/v1/projects/{project_id}/resources/{resource_id}/metrics/query_range")
    def metrics_proxy(
        request: Request, project_id: str, resource_id: str, identity: VerifiedIdentity = Depends(current_identity)
    ) -> Response:
        return _proxy("metrics", request, identity)

    return app


def create_app_from_env() -> FastAPI:
    """uvicorn factory: build collaborators from environment configuration."""
    from controlplane.auth.config import build_authenticator, load_auth_config
    from controlplane.config import load_database_config, load_proxy_config
    from controlplane.store import build_store

    store = build_store(load_database_config())
    app = create_app(
        store=store,
        authenticator=build_authenticator(load_auth_config()),
        proxy_config=load_proxy_config(),
    )

    @app.on_event("shutdown")
    def _close_store() -> None:
        store.close()

    return app


def run(host: str = "0.0.0.0", port: int = 8080) -> None:
    import os

    import uvicorn

    log_level = os.getenv("LOG_LEVEL", "info").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Map Python logging levels to uvicorn log levels
    uvicorn_log_level = (
        log_level.lower() if log_level.lower() in ["critical", "error", "warning", "info", "debug", "trace"] else "info"
    )

    logger.info("Starting control-plane API on %s:%d (log_level=%s)", host, port, log_level)
    uvicorn.run(
        "controlplane.api.server:create_app_from_env",
        factory=True,
        host=host,
        port=port,
        log_level=uvicorn_log_level,
    )
