"""Credential helpers: tenant usernames, generated passwords, CHAP pairs."""
from __future__ import annotations

import secrets
import string
from dataclasses import dataclass, field

PASSWORD_CHARSET = string.ascii_lowercase + string.ascii_uppercase + string.digits + "!@#$%^&*"
PASSWORD_LENGTH = 16
MIN_PASSWORD_LENGTH = 16
DEFAULT_USERNAME_PREFIX = "gardener"
CHAP_SUFFIX = "-chap"


@dataclass(frozen=True, slots=True)
class Credentials:
    """A username/password pair. The password is kept out of ``repr``."""

    username: str
    password: str = field(repr=False)

    def is_complete(self) -> bool:
        """Return ``True`` when both fields are non-empty."""
        return bool(self.username) and bool(self.password)


@dataclass(frozen=True, slots=True)
class TenantIdentity:
    """Name and namespace identifying one tenant."""

    name: str
    namespace: str

    def __post_init__(self) -> None:
        """Reject blank identities."""
        if not self.name.strip() or not self.namespace.strip():
            raise ValueError("Tenant name and namespace must be non-empty.")


def tenant_username(identity: TenantIdentity, prefix: str = DEFAULT_USERNAME_PREFIX) -> str:
    """Return the deterministic appliance username for *identity*."""
    return f"{prefix}-{identity.namespace}-{identity.name}".lower()


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    """Return a random password drawn from :data:`PASSWORD_CHARSET`."""
    if length < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password length must be at least {MIN_PASSWORD_LENGTH}.")
    return "".join(secrets.choice(PASSWORD_CHARSET) for _ in range(length))


def generate_chap_credentials(username: str) -> Credentials:
    """Return a fresh CHAP credential pair derived from *username*."""
    return Credentials(username=f"{username}{CHAP_SUFFIX}", password=generate_password())


__all__ = [
    "CHAP_SUFFIX",
    "Credentials",
    "DEFAULT_USERNAME_PREFIX",
    "PASSWORD_CHARSET",
    "PASSWORD_LENGTH",
    "TenantIdentity",
    "generate_chap_credentials",
    "generate_password",
    "tenant_username",
]
