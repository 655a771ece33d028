"""Secret lookup for administrative and tenant credentials.

Secrets are read through the :class:`SecretReader` protocol. The bundled
:class:`FileSecretStore` keeps one YAML mapping per secret below a root
directory (``<root>/<namespace>/<name>.yml``); the resource registry also
implements the protocol so a tenant's previously applied credentials secret
can be read back.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import yaml

from .state.registry import ResourceRegistryError
from .synology.credentials import Credentials
from .synology.errors import CredentialResolutionError

ADMIN_USER_KEY = "adminUser"
ADMIN_PASSWORD_KEY = "adminPassword"
TENANT_USER_KEY = "user"
TENANT_PASSWORD_KEY = "password"
DEFAULT_SECRET_NAMESPACE = "garden"


class SecretStoreError(RuntimeError):
    """Raised when a secret file exists but cannot be read."""


class SecretReader(Protocol):
    """Anything that can return the string data of a named secret."""

    def read_secret(self, namespace: str, name: str) -> Mapping[str, str] | None:
        """Return the secret data, or ``None`` when the secret does not exist."""
        ...


@dataclass(frozen=True)
class FileSecretStore:
    """Read secrets stored as YAML mappings on disk."""

    root: Path

    def path_for(self, namespace: str, name: str) -> Path:
        """Return the file that holds secret *name* in *namespace*."""
        return self.root.expanduser() / namespace / f"{name}.yml"

    def read_secret(self, namespace: str, name: str) -> dict[str, str] | None:
        """Return the mapping stored for *name*, or ``None`` when missing."""
        path = self.path_for(namespace, name)
        if not path.exists():
            return None
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise SecretStoreError(f"Failed to read secret {namespace}/{name}: {exc}") from exc
        if data is None:
            return {}
        if not isinstance(data, Mapping):
            raise SecretStoreError(f"Secret {namespace}/{name} must contain a mapping.")
        data_section = data.get("data", data)
        if not isinstance(data_section, Mapping):
            raise SecretStoreError(f"Secret {namespace}/{name} has a malformed 'data' mapping.")
        return {str(key): str(value) for key, value in data_section.items() if value is not None}


def split_secret_ref(ref: str, default_namespace: str = DEFAULT_SECRET_NAMESPACE) -> tuple[str, str]:
    """Split ``namespace/name`` (or a bare ``name``) into its parts."""
    text = ref.strip()
    if not text:
        raise CredentialResolutionError("Secret reference must not be empty.")
    namespace, sep, name = text.partition("/")
    if not sep:
        return default_namespace, namespace
    if not namespace or not name or "/" in name:
        raise CredentialResolutionError(f"Malformed secret reference {ref!r}.")
    return namespace, name


def resolve_admin_credentials(
    reader: SecretReader,
    ref: str,
    *,
    default_namespace: str = DEFAULT_SECRET_NAMESPACE,
) -> Credentials:
    """Return the administrative credentials referenced by *ref*."""
    namespace, name = split_secret_ref(ref, default_namespace)
    data = _read(reader, namespace, name)
    if data is None:
        raise CredentialResolutionError(f"Admin secret {namespace}/{name} not found.")
    credentials = Credentials(
        username=data.get(ADMIN_USER_KEY, ""),
        password=data.get(ADMIN_PASSWORD_KEY, ""),
    )
    if not credentials.is_complete():
        raise CredentialResolutionError(
            f"Admin secret {namespace}/{name} must define {ADMIN_USER_KEY} and "
            f"{ADMIN_PASSWORD_KEY}."
        )
    return credentials


def recover_tenant_credentials(
    reader: SecretReader,
    namespace: str,
    name: str,
    *,
    expected_username: str,
) -> Credentials:
    """Return the password previously issued to *expected_username*.

    The appliance never discloses passwords, so an existing account is only
    usable if its credentials can be read back from the tenant secret.
    """
    data = _read(reader, namespace, name)
    if data is None:
        raise CredentialResolutionError(
            f"Tenant secret {namespace}/{name} not found; cannot recover the password "
            f"of existing user {expected_username!r}."
        )
    username = data.get(TENANT_USER_KEY, "")
    password = data.get(TENANT_PASSWORD_KEY, "")
    if username != expected_username:
        raise CredentialResolutionError(
            f"Tenant secret {namespace}/{name} belongs to {username!r}, "
            f"expected {expected_username!r}."
        )
    if not password:
        raise CredentialResolutionError(
            f"Tenant secret {namespace}/{name} has no {TENANT_PASSWORD_KEY} entry."
        )
    return Credentials(username=username, password=password)


def _read(reader: SecretReader, namespace: str, name: str) -> Mapping[str, str] | None:
    try:
        return reader.read_secret(namespace, name)
    except (SecretStoreError, ResourceRegistryError, OSError) as exc:
        raise CredentialResolutionError(f"Failed to read secret {namespace}/{name}: {exc}") from exc


__all__ = [
    "ADMIN_PASSWORD_KEY",
    "ADMIN_USER_KEY",
    "FileSecretStore",
    "SecretReader",
    "SecretStoreError",
    "TENANT_PASSWORD_KEY",
    "TENANT_USER_KEY",
    "recover_tenant_credentials",
    "resolve_admin_credentials",
    "split_secret_ref",
]
