from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "y", "on")


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except Exception:
        return default


def _env_str(name: str) -> Optional[str]:
    return (os.getenv(name) or "").strip() or None


@dataclass(frozen=True)
class DatabaseConfig:
    # Postgres connection (either dsn or parts)
    postgres_dsn: Optional[str]
    postgres_host: Optional[str]
    postgres_port: int
    postgres_db: Optional[str]
    postgres_user: Optional[str]
    postgres_password: Optional[str]

    # Pool sizing / timeouts
    pool_min_size: int
    pool_max_size: int
    pool_timeout_seconds: float
    connect_timeout_seconds: int

    # Role -> permission mappings are reference data; cache them for this long.
    role_cache_ttl_seconds: float

    # Development only: run against the in-process store when Postgres is not configured.
    dev_memory_store: bool


@dataclass(frozen=True)
class ProxyConfig:
    # Backends are optional; an unset URL answers 503 for that proxy.
    logs_url: Optional[str]
    metrics_url: Optional[str]

    tenant_header: str
    # Upper bound for the permission check inserted into the forwarding path.
    authz_timeout_seconds: float
    upstream_timeout_seconds: float


@lru_cache(maxsize=1)
def load_database_config() -> DatabaseConfig:
    port = _env_int("POSTGRES_PORT", 5432)
    min_size = max(1, _env_int("DB_POOL_MIN_SIZE", 1))
    max_size = max(min_size, _env_int("DB_POOL_MAX_SIZE", 10))

    return DatabaseConfig(
        postgres_dsn=_env_str("POSTGRES_DSN"),
        postgres_host=_env_str("POSTGRES_HOST"),
        postgres_port=port,
        postgres_db=_env_str("POSTGRES_DB"),
        postgres_user=_env_str("POSTGRES_USER"),
        postgres_password=_env_str("POSTGRES_PASSWORD"),
        pool_min_size=min_size,
        pool_max_size=max_size,
        pool_timeout_seconds=max(0.5, min(_env_float("DB_POOL_TIMEOUT_SECONDS", 10.0), 120.0)),
        connect_timeout_seconds=max(1, min(_env_int("DB_CONNECT_TIMEOUT_SECONDS", 5), 60)),
        role_cache_ttl_seconds=max(0.0, _env_float("RBAC_ROLE_CACHE_TTL_SECONDS", 300.0)),
        dev_memory_store=_env_bool("DEV_MEMORY_STORE", False),
    )


@lru_cache(maxsize=1)
def load_proxy_config() -> ProxyConfig:
    """
    Load proxy configuration from env (ConfigMap/Secret friendly).

    Recommended vars:
    - LOGS_URL=http://loki-gateway.observability:3100
    - METRICS_URL=http://mimir-nginx.observability:80
    - PROXY_TENANT_HEADER=X-Scope-OrgID
    - PROXY_AUTHZ_TIMEOUT_SECONDS=2
    - PROXY_UPSTREAM_TIMEOUT_SECONDS=30
    """
    return ProxyConfig(
        logs_url=(_env_str("LOGS_URL") or "").rstrip("/") or None,
        metrics_url=(_env_str("METRICS_URL") or "").rstrip("/") or None,
        tenant_header=_env_str("PROXY_TENANT_HEADER") or "X-Scope-OrgID",
        authz_timeout_seconds=max(0.1, min(_env_float("PROXY_AUTHZ_TIMEOUT_SECONDS", 2.0), 30.0)),
        upstream_timeout_seconds=max(1.0, min(_env_float("PROXY_UPSTREAM_TIMEOUT_SECONDS", 30.0), 300.0)),
    )


def build_postgres_dsn(cfg: DatabaseConfig) -> Optional[str]:
    if cfg.postgres_dsn:
        return cfg.postgres_dsn
    if not (cfg.postgres_host and cfg.postgres_db and cfg.postgres_user and cfg.postgres_password):
        return None
    # make_conninfo quotes/escapes special characters (spaces, quotes) in passwords.
    from psycopg.conninfo import make_conninfo

    return make_conninfo(
        host=cfg.postgres_host,
        port=cfg.postgres_port,
        dbname=cfg.postgres_db,
        user=cfg.postgres_user,
        password=cfg.postgres_password,
        connect_timeout=cfg.connect_timeout_seconds,
    )
