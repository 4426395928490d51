from __future__ import annotations

import json
from dataclasses import asdict

from itsdangerous import BadSignature, BadTimeSignature, URLSafeTimedSerializer

from controlplane.auth.base import VerifiedIdentity
from controlplane.errors import AuthError

TOKEN_SALT = "controlplane-dev-token-v1"


class SignedTokenAuthenticator:
    """
    Development authenticator: bearer tokens are itsdangerous-signed, time-limited
    JSON blobs carrying the identity. Useful for local runs and tests without an IdP.
    """

    def __init__(self, secret: str, *, ttl_seconds: int = 43200) -> None:
        if not secret:
            raise ValueError("secret is required")
        self._serializer = URLSafeTimedSerializer(secret_key=secret, salt=TOKEN_SALT)
        self.ttl_seconds = ttl_seconds

    def mint(self, identity: VerifiedIdentity) -> str:
        raw = json.dumps(asdict(identity), separators=(",", ":"), sort_keys=True)
        return self._serializer.dumps(raw)

    def verify(self, token: str) -> VerifiedIdentity:
        if not token:
            raise AuthError("missing token")
        try:
            raw = self._serializer.loads(token, max_age=self.ttl_seconds)
            data = json.loads(raw)
        except (BadSignature, BadTimeSignature, ValueError) as e:
            raise AuthError("invalid token") from e
        if not isinstance(data, dict):
            raise AuthError("invalid token")
        user_id = str(data.get("user_id") or "").strip()
        if not user_id:
            raise AuthError("invalid token")
        email = data.get("email")
        name = data.get("name")
        return VerifiedIdentity(
            user_id=user_id,
            email=str(email) if email else None,
            name=str(name) if name else None,
            is_service_account=bool(data.get("is_service_account")),
        )
