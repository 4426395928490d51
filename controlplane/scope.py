"""Scope tree: organization -> project -> resource.

The tree has a fixed depth of three. Every project has exactly one organization
parent and every resource exactly one project parent, so resolving the ancestors of
any scope takes at most two single-hop lookups.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Dict, List, Optional, Protocol

from controlplane.errors import InvalidInput, StoreUnavailable

if TYPE_CHECKING:
    from controlplane.context import OpContext

MAX_SCOPE_DEPTH = 3


class ScopeType(str, Enum):
    ORGANIZATION = "organization"
    PROJECT = "project"
    RESOURCE = "resource"

    @property
    def parent_type(self) -> Optional["ScopeType"]:
        return _PARENT_TYPES[self]


_PARENT_TYPES: Dict[ScopeType, Optional[ScopeType]] = {
    ScopeType.ORGANIZATION: None,
    ScopeType.PROJECT: ScopeType.ORGANIZATION,
    ScopeType.RESOURCE: ScopeType.PROJECT,
}

# URL collection names -> scope types (e.g. /organizations/{id}).
_PATH_KINDS: Dict[str, ScopeType] = {
    "organizations": ScopeType.ORGANIZATION,
    "organization": ScopeType.ORGANIZATION,
    "projects": ScopeType.PROJECT,
    "project": ScopeType.PROJECT,
    "resources": ScopeType.RESOURCE,
    "resource": ScopeType.RESOURCE,
}


@dataclass(frozen=True)
class ScopeRef:
    scope_type: ScopeType
    scope_id: str

    def __str__(self) -> str:
        return f"{self.scope_type.value}/{self.scope_id}"

    @classmethod
    def organization(cls, org_id: str) -> "ScopeRef":
        return cls(ScopeType.ORGANIZATION, org_id)

    @classmethod
    def project(cls, project_id: str) -> "ScopeRef":
        return cls(ScopeType.PROJECT, project_id)

    @classmethod
    def resource(cls, resource_id: str) -> "ScopeRef":
        return cls(ScopeType.RESOURCE, resource_id)


def parse_scope(kind: str, scope_id: str) -> ScopeRef:
    """
    Build a ScopeRef from a scope kind ("project", "projects", ...) and an id.

    Raises InvalidInput for unknown kinds or empty ids.
    """
    st = _PATH_KINDS.get((kind or "").strip().lower())
    if st is None:
        raise InvalidInput(f"unknown scope type: {kind!r}")
    sid = (scope_id or "").strip()
    if not sid:
        raise InvalidInput(f"{st.value} id is required")
    return ScopeRef(st, sid)


class ScopeResolver(Protocol):
    def parent_of(self, ctx: "OpContext", scope: ScopeRef) -> Optional[ScopeRef]:
        """
        Return the parent scope (None for an organization).

        Raises ScopeNotFound when `scope` does not exist.
        """


def walk_ancestors(resolver: ScopeResolver, ctx: "OpContext", scope: ScopeRef) -> List[ScopeRef]:
    """
    Return the effective scope set: `scope` followed by its ancestors, nearest first.

    e.g. resource r1 -> [resource/r1, project/p1, organization/o1]
    """
    chain = [scope]
    cur = scope
    while True:
        parent = resolver.parent_of(ctx, cur)
        if parent is None:
            break
        if parent.scope_type != cur.scope_type.parent_type:
            raise StoreUnavailable(f"inconsistent scope tree: {cur} has parent {parent}")
        chain.append(parent)
        if len(chain) > MAX_SCOPE_DEPTH:
            raise StoreUnavailable(f"scope chain deeper than {MAX_SCOPE_DEPTH} at {scope}")
        cur = parent
    return chain
