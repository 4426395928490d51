"""
Authentication capability for the control-plane API and proxy.

Design goals:
- Verification is an injected `Authenticator`; handlers only ever see a VerifiedIdentity.
- OIDC/JWKS bearer tokens in production, signed dev tokens locally.
- Fail closed: a missing or unverifiable token never reaches authorization.
"""
