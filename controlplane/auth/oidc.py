from __future__ import annotations

import json
import time
from typing import Any, Dict, Optional, Tuple

import jwt  # PyJWT
import requests

from controlplane.auth.base import VerifiedIdentity
from controlplane.errors import AuthError

# Discovery documents and key sets change rarely; refetch at most once an hour per URL.
_FETCH_TTL_SECONDS = 3600.0
_json_cache: Dict[str, Tuple[float, Dict[str, Any]]] = {}

# Machine-to-machine tokens carry this grant type.
M2M_GRANT_TYPE = "client-credentials"


def _fetch_json_cached(url: str, *, kind: str) -> Dict[str, Any]:
    hit = _json_cache.get(url)
    now = time.time()
    if hit is not None and now - hit[0] < _FETCH_TTL_SECONDS:
        return hit[1]
    r = requests.get(url, timeout=10)
    r.raise_for_status()
    data = r.json()
    if not isinstance(data, dict):
        raise ValueError(f"Invalid {kind}")
    _json_cache[url] = (now, data)
    return data


def _get_discovery(discovery_url: str) -> Dict[str, Any]:
    return _fetch_json_cached(discovery_url, kind="OIDC discovery document")


def _get_jwks(jwks_uri: str) -> Dict[str, Any]:
    return _fetch_json_cached(jwks_uri, kind="JWKS")


def _claim_str(claims: Dict[str, Any], key: str) -> Optional[str]:
    v = claims.get(key)
    return str(v).strip() or None if v else None


class JWTAuthenticator:
    """Verifies RS256 access tokens against the issuer's published JWKS."""

    def __init__(self, *, discovery_url: str, audience: str, issuer: Optional[str] = None) -> None:
        self.discovery_url = discovery_url
        self.audience = audience
        self.issuer = issuer

    def _signing_key(self, token: str) -> Tuple[Any, str]:
        disc = _get_discovery(self.discovery_url)
        issuer = str(disc.get("issuer") or self.issuer or "")
        jwks_uri = str(disc.get("jwks_uri") or "")
        if not issuer or not jwks_uri:
            raise ValueError("OIDC discovery missing issuer/jwks_uri")

        hdr = jwt.get_unverified_header(token)
        kid = str(hdr.get("kid") or "")
        if not kid:
            raise ValueError("token missing kid")

        keys = _get_jwks(jwks_uri).get("keys")
        if not isinstance(keys, list):
            raise ValueError("Invalid JWKS keys")
        for k in keys:
            if isinstance(k, dict) and str(k.get("kid") or "") == kid:
                return jwt.algorithms.RSAAlgorithm.from_jwk(json.dumps(k)), issuer
        raise ValueError("Unknown signing key (kid)")

    def verify(self, token: str) -> VerifiedIdentity:
        if not token:
            raise AuthError("missing token")
        try:
            key, issuer = self._signing_key(token)
            claims = jwt.decode(
                token,
                key=key,
                algorithms=["RS256"],
                audience=self.audience,
                issuer=issuer,
                options={"require": ["exp", "iat", "iss", "aud", "sub"]},
            )
        except (jwt.PyJWTError, ValueError, requests.RequestException) as e:
            raise AuthError(f"invalid token: {e}") from e

        sub = _claim_str(claims, "sub")
        if not sub:
            raise AuthError("invalid token: empty subject")
        email = _claim_str(claims, "email")
        if not email and "@" in sub:
            email = sub
        return VerifiedIdentity(
            user_id=sub,
            email=email,
            name=_claim_str(claims, "name"),
            is_service_account=claims.get("gty") == M2M_GRANT_TYPE,
        )
