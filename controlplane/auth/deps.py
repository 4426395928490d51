from __future__ import annotations

from typing import Optional

from fastapi import Request

from controlplane.auth.base import Authenticator, VerifiedIdentity
from controlplane.errors import AuthError


def bearer_token(request: Request) -> Optional[str]:
    raw = (request.headers.get("authorization") or "").strip()
    scheme, _, token = raw.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def authenticate_request(request: Request, authenticator: Authenticator) -> VerifiedIdentity:
    """
    Authenticate a request from its Bearer token.

    Raises AuthError when the token is missing or fails verification (fail closed).
    """
    token = bearer_token(request)
    if not token:
        raise AuthError("missing bearer token")
    return authenticator.verify(token)
