from __future__ import annotations

import logging

from controlplane.config import DatabaseConfig, build_postgres_dsn
from controlplane.errors import StoreUnavailable
from controlplane.store.base import PermissionStore, StoreTransaction
from controlplane.store.memory import MemoryStore

logger = logging.getLogger(__name__)


def build_store(cfg: DatabaseConfig) -> PermissionStore:
    """
    Return the configured store.

    Postgres when a DSN is available; the in-process store only when explicitly
    enabled for development.
    """
    if build_postgres_dsn(cfg):
        from controlplane.store.postgres import PostgresStore

        return PostgresStore.from_config(cfg)
    if cfg.dev_memory_store:
        logger.warning("Postgres not configured; using in-memory permission store (DEV_MEMORY_STORE=1)")
        return MemoryStore.with_system_roles()
    raise StoreUnavailable("Postgres not configured (set POSTGRES_DSN or POSTGRES_* env vars)")


__all__ = ["MemoryStore", "PermissionStore", "StoreTransaction", "build_store"]
