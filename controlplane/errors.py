"""Error taxonomy shared by the store, the authorization layer and the proxy."""

from __future__ import annotations


class ControlPlaneError(Exception):
    """Base class for all domain errors."""


class NotFound(ControlPlaneError):
    """An entity (organization, project, resource, user, assignment) does not exist."""


class ScopeNotFound(NotFound):
    """The scope referenced by an authorization query does not exist."""

    def __init__(self, scope_type: str, scope_id: str) -> None:
        super().__init__(f"{scope_type} not found: {scope_id}")
        self.scope_type = scope_type
        self.scope_id = scope_id


class InvalidInput(ControlPlaneError):
    """Caller-supplied input failed validation. Messages are safe to show to clients."""


class InvalidIdentity(InvalidInput):
    """An unknown identity that is not an invitable email address."""


class AlreadyExists(InvalidInput):
    pass


class RoleNotFound(ControlPlaneError):
    def __init__(self, role_name: str) -> None:
        super().__init__(f"role not found: {role_name}")
        self.role_name = role_name


class PermissionDenied(ControlPlaneError):
    """Explicit negative authorization decision."""


class AuthError(ControlPlaneError):
    """The request carried no identity, or the identity could not be verified."""


class StoreUnavailable(ControlPlaneError):
    """The data store could not be reached or did not answer in time."""


class DeadlineExceeded(StoreUnavailable):
    pass


class OperationCancelled(ControlPlaneError):
    pass


class UpstreamUnavailable(ControlPlaneError):
    """A proxied backend failed (network error, timeout, 5xx transport failure)."""


class BackendNotConfigured(ControlPlaneError):
    pass
