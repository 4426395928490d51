from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from controlplane.auth.base import Authenticator


@dataclass(frozen=True)
class AuthConfig:
    # "jwt" (OIDC bearer tokens) or "signed" (itsdangerous tokens, development only)
    mode: str

    # OIDC / JWT verification
    oidc_issuer: Optional[str]
    oidc_audience: Optional[str]
    oidc_discovery_url: Optional[str]  # default: {issuer}/.well-known/openid-configuration

    # Signed-token verification
    token_secret: Optional[str]
    token_ttl_seconds: int

    @property
    def discovery_url(self) -> Optional[str]:
        if self.oidc_discovery_url:
            return self.oidc_discovery_url
        if not self.oidc_issuer:
            return None
        return self.oidc_issuer.rstrip("/") + "/.well-known/openid-configuration"


@lru_cache(maxsize=1)
def load_auth_config() -> AuthConfig:
    """
    Load authentication configuration from environment variables.

    Recommended vars:
    - AUTH_MODE=jwt
    - OIDC_ISSUER=https://tenant.example.auth0.com/
    - OIDC_AUDIENCE=https://api.example.com
    - AUTH_TOKEN_SECRET=... (AUTH_MODE=signed only)
    """
    mode = (os.getenv("AUTH_MODE", "") or "jwt").strip().lower()
    if mode not in ("jwt", "signed"):
        mode = "jwt"

    ttl = int(float((os.getenv("AUTH_TOKEN_TTL_SECONDS", "") or "43200").strip() or "43200"))  # 12h default
    if ttl <= 60:
        ttl = 60

    return AuthConfig(
        mode=mode,
        oidc_issuer=(os.getenv("OIDC_ISSUER", "") or "").strip() or None,
        oidc_audience=(os.getenv("OIDC_AUDIENCE", "") or "").strip() or None,
        oidc_discovery_url=(os.getenv("OIDC_DISCOVERY_URL", "") or "").strip() or None,
        token_secret=(os.getenv("AUTH_TOKEN_SECRET", "") or "").strip() or None,
        token_ttl_seconds=ttl,
    )


def build_authenticator(cfg: AuthConfig) -> Authenticator:
    if cfg.mode == "signed":
        from controlplane.auth.session import SignedTokenAuthenticator

        if not cfg.token_secret:
            raise ValueError("AUTH_TOKEN_SECRET is required when AUTH_MODE=signed")
        return SignedTokenAuthenticator(cfg.token_secret, ttl_seconds=cfg.token_ttl_seconds)

    from controlplane.auth.oidc import JWTAuthenticator

    if not cfg.discovery_url or not cfg.oidc_audience:
        raise ValueError("OIDC_ISSUER (or OIDC_DISCOVERY_URL) and OIDC_AUDIENCE are required when AUTH_MODE=jwt")
    return JWTAuthenticator(discovery_url=cfg.discovery_url, audience=cfg.oidc_audience, issuer=cfg.oidc_issuer)
