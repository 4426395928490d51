from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol


@dataclass(frozen=True)
class VerifiedIdentity:
    """
    Output of a successful token verification.

    `user_id` is the stable external subject. Service accounts (machine-to-machine
    tokens) carry no email and never take part in placeholder transfer.
    """

    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    is_service_account: bool = False


class Authenticator(Protocol):
    def verify(self, token: str) -> VerifiedIdentity:
        """Verify `token` and return the identity it carries. Raises AuthError."""
