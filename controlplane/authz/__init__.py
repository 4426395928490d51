from controlplane.authz.assignments import RoleAssignmentManager
from controlplane.authz.engine import AuthorizationEngine, InheritedAssignment

__all__ = ["AuthorizationEngine", "InheritedAssignment", "RoleAssignmentManager"]
