"""Decoder for the per-tenant provider configuration document.

A tenant may attach a small ``ShootConfiguration`` document to its desired
state. The decoder is an ordinary object handed to the actuator; there is no
process-wide registration step.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from urllib.parse import urlparse

import yaml

LOGGER = logging.getLogger(__name__)

API_VERSION = "synology.csi.extensions.config/v1alpha1"
KIND = "ShootConfiguration"

_TYPE_KEYS = {"apiVersion", "kind"}
_KNOWN_KEYS = {"synologyUrl", "chapEnabled", "username", "password", "healthCheckConfig"}
_IGNORED_CREDENTIAL_KEYS = ("username", "password")


class ProviderConfigError(RuntimeError):
    """Raised when a provider configuration document is malformed."""


@dataclass(frozen=True, slots=True)
class TenantConfig:
    """Tenant-supplied overrides for one reconciliation."""

    chap_enabled: bool | None = None
    synology_url: str | None = None
    warnings: tuple[str, ...] = ()


EMPTY_TENANT_CONFIG = TenantConfig()


@dataclass(frozen=True, slots=True)
class ProviderConfigDecoder:
    """Turn raw JSON/YAML provider configuration into :class:`TenantConfig`."""

    strict: bool = True

    def decode(self, raw: bytes | str | Mapping[str, object] | None) -> TenantConfig:
        """Decode *raw*; an empty document yields an empty :class:`TenantConfig`."""
        document = self._load(raw)
        if not document:
            return EMPTY_TENANT_CONFIG

        self._check_type(document)
        unknown = set(document) - _KNOWN_KEYS - _TYPE_KEYS
        if unknown and self.strict:
            joined = ", ".join(sorted(unknown))
            raise ProviderConfigError(f"Unknown provider config keys: {joined}.")

        warnings: list[str] = []
        for key in _IGNORED_CREDENTIAL_KEYS:
            if document.get(key):
                message = f"Ignoring provider config field {key!r}; tenant credentials are managed."
                LOGGER.warning(message)
                warnings.append(message)

        return TenantConfig(
            chap_enabled=_optional_bool(document.get("chapEnabled"), "chapEnabled"),
            synology_url=_optional_url(document.get("synologyUrl")),
            warnings=tuple(warnings),
        )

    def _load(self, raw: bytes | str | Mapping[str, object] | None) -> dict[str, object]:
        if raw is None:
            return {}
        if isinstance(raw, Mapping):
            data: object = raw
        else:
            text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
            if not text.strip():
                return {}
            try:
                # JSON is a subset of YAML, so one parser covers both encodings.
                data = yaml.safe_load(text)
            except yaml.YAMLError as exc:
                raise ProviderConfigError(f"Failed to parse provider config: {exc}") from exc
        if data is None:
            return {}
        if not isinstance(data, Mapping):
            raise ProviderConfigError("Provider config must be a mapping.")
        return {str(key): value for key, value in data.items()}

    @staticmethod
    def _check_type(document: Mapping[str, object]) -> None:
        api_version = document.get("apiVersion")
        if api_version is not None and api_version != API_VERSION:
            raise ProviderConfigError(
                f"Unsupported provider config apiVersion {api_version!r}; expected {API_VERSION}."
            )
        kind = document.get("kind")
        if kind is not None and kind != KIND:
            raise ProviderConfigError(f"Unsupported provider config kind {kind!r}; expected {KIND}.")


def _optional_bool(value: object, label: str) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    raise ProviderConfigError(f"Provider config field {label} must be a boolean.")


def _optional_url(value: object) -> str | None:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ProviderConfigError("Provider config field synologyUrl must be a string.")
    parsed = urlparse(value)
    if not parsed.scheme or not parsed.hostname:
        raise ProviderConfigError(f"Provider config synologyUrl {value!r} lacks a scheme or host.")
    try:
        port = parsed.port
    except ValueError as exc:
        raise ProviderConfigError(f"Provider config synologyUrl {value!r} has an invalid port.") from exc
    if port is None:
        raise ProviderConfigError(f"Provider config synologyUrl {value!r} must include a port.")
    return value


__all__ = [
    "API_VERSION",
    "KIND",
    "ProviderConfigDecoder",
    "ProviderConfigError",
    "TenantConfig",
]
