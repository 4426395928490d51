"""
Pytest config.

Tests import the local `controlplane/` package directly; pin the repo root on sys.path
so that works even when a global `pytest` entrypoint is used without an editable
install.
"""

from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()


class StepClock:
    """Settable clock for MemoryStore expiry tests."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:  # type: ignore[no-untyped-def]
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> StepClock:
    return StepClock(datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(clock):  # type: ignore[no-untyped-def]
    from controlplane.store.memory import MemoryStore

    return MemoryStore.with_system_roles(clock=clock)


@pytest.fixture
def ctx():  # type: ignore[no-untyped-def]
    from controlplane.context import OpContext

    return OpContext.background()


@pytest.fixture
def manager(store):  # type: ignore[no-untyped-def]
    from controlplane.authz.assignments import RoleAssignmentManager

    counter = {"n": 0}

    def _ids() -> str:
        counter["n"] += 1
        return f"id-{counter['n']}"

    return RoleAssignmentManager(store, id_factory=_ids)


@pytest.fixture
def engine(store):  # type: ignore[no-untyped-def]
    from controlplane.authz.engine import AuthorizationEngine

    return AuthorizationEngine(store)


@pytest.fixture
def tree(manager, ctx):  # type: ignore[no-untyped-def]
    """
    org1 (owner: root)
      proj-a -> res-a1, res-a2
      proj-b -> res-b1
    org2 (owner: root)
      proj-c -> res-c1
    """
    manager.create_organization(ctx, "Org One", "root", org_id="org1")
    manager.create_organization(ctx, "Org Two", "root", org_id="org2")
    manager.create_project(ctx, "org1", "A", "", "root", project_id="proj-a")
    manager.create_project(ctx, "org1", "B", "", "root", project_id="proj-b")
    manager.create_project(ctx, "org2", "C", "", "root", project_id="proj-c")
    manager.create_resource(ctx, "proj-a", "a1", "service", resource_id="res-a1")
    manager.create_resource(ctx, "proj-a", "a2", "service", resource_id="res-a2")
    manager.create_resource(ctx, "proj-b", "b1", "service", resource_id="res-b1")
    manager.create_resource(ctx, "proj-c", "c1", "service", resource_id="res-c1")
    return manager
