from __future__ import annotations

import json
import time

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from controlplane.auth.base import VerifiedIdentity
from controlplane.auth.config import build_authenticator, load_auth_config
from controlplane.auth.oidc import JWTAuthenticator
from controlplane.auth.session import SignedTokenAuthenticator
from controlplane.errors import AuthError

ISSUER = "https://issuer.example.com/"
AUDIENCE = "https://api.example.com"


@pytest.fixture(scope="module")
def rsa_key():  # type: ignore[no-untyped-def]
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def jwt_authn(rsa_key, monkeypatch):  # type: ignore[no-untyped-def]
    jwk = json.loads(jwt.algorithms.RSAAlgorithm.to_jwk(rsa_key.public_key()))
    jwk["kid"] = "k1"
    monkeypatch.setattr(
        "controlplane.auth.oidc._get_discovery",
        lambda _url: {"issuer": ISSUER, "jwks_uri": "https://issuer.example.com/.well-known/jwks.json"},
    )
    monkeypatch.setattr("controlplane.auth.oidc._get_jwks", lambda _uri: {"keys": [jwk]})
    return JWTAuthenticator(discovery_url=ISSUER + ".well-known/openid-configuration", audience=AUDIENCE)


def _token(rsa_key, **overrides) -> str:  # type: ignore[no-untyped-def]
    now = int(time.time())
    claims = {"sub": "auth0|123", "iss": ISSUER, "aud": AUDIENCE, "iat": now, "exp": now + 300}
    claims.update(overrides)
    return jwt.encode(claims, rsa_key, algorithm="RS256", headers={"kid": "k1"})


def test_jwt_verify_extracts_identity(jwt_authn, rsa_key) -> None:
    ident = jwt_authn.verify(_token(rsa_key, email="a@example.com", name="A"))
    assert ident == VerifiedIdentity(user_id="auth0|123", email="a@example.com", name="A", is_service_account=False)


def test_jwt_email_falls_back_to_subject(jwt_authn, rsa_key) -> None:
    ident = jwt_authn.verify(_token(rsa_key, sub="someone@example.com"))
    assert ident.email == "someone@example.com"


def test_jwt_m2m_tokens_are_service_accounts(jwt_authn, rsa_key) -> None:
    ident = jwt_authn.verify(_token(rsa_key, sub="client@clients", gty="client-credentials"))
    assert ident.is_service_account is True


@pytest.mark.parametrize(
    "overrides",
    [
        {"aud": "https://other.example.com"},
        {"iss": "https://evil.example.com/"},
        {"exp": int(time.time()) - 10},
    ],
)
def test_jwt_rejects_bad_claims(jwt_authn, rsa_key, overrides) -> None:  # type: ignore[no-untyped-def]
    with pytest.raises(AuthError):
        jwt_authn.verify(_token(rsa_key, **overrides))


def test_jwt_rejects_foreign_key(jwt_authn) -> None:
    other = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    with pytest.raises(AuthError):
        jwt_authn.verify(_token(other))


def test_jwt_rejects_garbage(jwt_authn) -> None:
    with pytest.raises(AuthError):
        jwt_authn.verify("not-a-jwt")
    with pytest.raises(AuthError):
        jwt_authn.verify("")


def test_signed_token_roundtrip() -> None:
    authn = SignedTokenAuthenticator("s3cret")
    ident = VerifiedIdentity(user_id="alice", email="alice@example.com")
    assert authn.verify(authn.mint(ident)) == ident


def test_signed_token_rejects_other_secret() -> None:
    token = SignedTokenAuthenticator("one").mint(VerifiedIdentity(user_id="alice"))
    with pytest.raises(AuthError):
        SignedTokenAuthenticator("two").verify(token)


def test_build_authenticator_from_env(monkeypatch) -> None:
    monkeypatch.setenv("AUTH_MODE", "signed")
    monkeypatch.setenv("AUTH_TOKEN_SECRET", "dev")
    load_auth_config.cache_clear()
    try:
        assert isinstance(build_authenticator(load_auth_config()), SignedTokenAuthenticator)
    finally:
        load_auth_config.cache_clear()


def test_build_authenticator_jwt_requires_audience(monkeypatch) -> None:
    monkeypatch.setenv("AUTH_MODE", "jwt")
    monkeypatch.setenv("OIDC_ISSUER", ISSUER)
    monkeypatch.delenv("OIDC_AUDIENCE", raising=False)
    load_auth_config.cache_clear()
    try:
        cfg = load_auth_config()
        assert cfg.discovery_url == "https://issuer.example.com/.well-known/openid-configuration"
        with pytest.raises(ValueError):
            build_authenticator(cfg)
    finally:
        load_auth_config.cache_clear()


class _JSONResp:
    def __init__(self, data) -> None:  # type: ignore[no-untyped-def]
        self._data = data

    def raise_for_status(self) -> None:
        return None

    def json(self):  # type: ignore[no-untyped-def]
        return self._data


def test_discovery_and_jwks_are_cached_per_url(monkeypatch) -> None:
    from controlplane.auth import oidc

    fetched = []

    def fake_get(url, timeout=None):  # type: ignore[no-untyped-def]
        fetched.append(url)
        return _JSONResp({"url": url})

    monkeypatch.setattr(oidc, "_json_cache", {})
    monkeypatch.setattr(oidc.requests, "get", fake_get)

    assert oidc._get_discovery("https://a/disc") == {"url": "https://a/disc"}
    assert oidc._get_discovery("https://a/disc") == {"url": "https://a/disc"}
    assert oidc._get_jwks("https://a/jwks") == {"url": "https://a/jwks"}
    assert fetched == ["https://a/disc", "https://a/jwks"]


def test_non_object_documents_are_rejected(monkeypatch) -> None:
    from controlplane.auth import oidc

    monkeypatch.setattr(oidc, "_json_cache", {})
    monkeypatch.setattr(oidc.requests, "get", lambda url, timeout=None: _JSONResp(["not", "a", "dict"]))
    with pytest.raises(ValueError):
        oidc._get_jwks("https://a/jwks")
    assert oidc._json_cache == {}
