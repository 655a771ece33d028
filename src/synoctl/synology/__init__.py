"""Synology DSM integration: session client, credentials, and manifests."""
from __future__ import annotations

from .client import Authenticated, SynologyClient, SynologyUser, Unauthenticated
from .credentials import Credentials, TenantIdentity, generate_password, tenant_username
from .errors import (
    AuthenticationFailed,
    CredentialResolutionError,
    InvalidEndpoint,
    ManifestGenerationError,
    ProtocolError,
    ReconcileCancelled,
    RemoteAPIError,
    SessionExpired,
    SynologyError,
    TransportError,
)
from .manifests import ClientConfig, ManifestBuilder, ManifestConfig, render_client_info

__all__ = [
    "Authenticated",
    "AuthenticationFailed",
    "ClientConfig",
    "CredentialResolutionError",
    "Credentials",
    "InvalidEndpoint",
    "ManifestBuilder",
    "ManifestConfig",
    "ManifestGenerationError",
    "ProtocolError",
    "ReconcileCancelled",
    "RemoteAPIError",
    "SessionExpired",
    "SynologyClient",
    "SynologyError",
    "SynologyUser",
    "TenantIdentity",
    "TransportError",
    "Unauthenticated",
    "generate_password",
    "render_client_info",
    "tenant_username",
]
