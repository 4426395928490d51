from __future__ import annotations

import re

from controlplane.errors import InvalidInput

# Deliberately narrower than RFC 5322: opaque subject tokens ("auth0|123"), bare
# UUIDs and addresses with unusual local-part characters must never be treated as
# invitable emails.
_EMAIL_RE = re.compile(r"^[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}$")

_DNS_ID_RE = re.compile(r"^[a-z0-9-]+$")


def is_valid_email(value: str | None) -> bool:
    """Return True if `value` looks like an email address we can invite."""
    if not value:
        return False
    if value != value.strip() or any(ch.isspace() for ch in value):
        return False
    if value.count("@") != 1:
        return False
    return _EMAIL_RE.match(value) is not None


def normalize_email(value: str) -> str:
    return (value or "").strip().lower()


def validate_dns_id(value: str, *, kind: str = "ID") -> str:
    """
    Validate a caller-chosen entity ID.

    Rules: 1-63 chars, starts with a lowercase letter, only [a-z0-9-], no trailing
    hyphen, no consecutive hyphens. Returns the ID unchanged on success.
    """
    if not value:
        raise InvalidInput(f"{kind} cannot be empty")
    if len(value) > 63:
        raise InvalidInput(f"{kind} cannot be longer than 63 characters")
    if not ("a" <= value[0] <= "z"):
        raise InvalidInput(f"{kind} must start with a lowercase letter")
    if not _DNS_ID_RE.match(value):
        raise InvalidInput(f"{kind} can only contain lowercase letters, numbers, and hyphens")
    if value.endswith("-"):
        raise InvalidInput(f"{kind} cannot end with a hyphen")
    if "--" in value:
        raise InvalidInput(f"{kind} cannot contain consecutive hyphens")
    return value
