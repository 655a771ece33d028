"""Exception hierarchy for Synology appliance and credential operations."""
from __future__ import annotations


class SynologyError(RuntimeError):
    """Base class for every error raised by the synology package."""


class InvalidEndpoint(SynologyError):
    """Raised when the appliance base address lacks a scheme or host."""


class TransportError(SynologyError):
    """Raised when an HTTP request fails before a response is decoded."""


class ProtocolError(SynologyError):
    """Raised when a response cannot be decoded or violates the envelope contract."""


class AuthenticationFailed(SynologyError):
    """Raised when the appliance rejects the supplied administrative credentials."""

    def __init__(self, code: int, message: str | None = None) -> None:
        """Store the appliance error *code* alongside the message."""
        super().__init__(message or f"Login failed with error code {code}.")
        self.code = code


class RemoteAPIError(SynologyError):
    """Raised when the appliance reports an unrecognised failure code."""

    def __init__(self, code: int, operation: str) -> None:
        """Store the failing *operation* and its error *code*."""
        super().__init__(f"{operation} failed with error code {code}.")
        self.code = code
        self.operation = operation


class SessionExpired(RemoteAPIError):
    """Raised when the session stays invalid after the one-shot re-login."""


class CredentialResolutionError(SynologyError):
    """Raised when administrative or tenant credentials cannot be resolved."""


class ManifestGenerationError(SynologyError):
    """Raised when the manifest configuration is rejected."""


class ReconcileCancelled(SynologyError):
    """Raised when a reconciliation is cancelled between network calls."""


__all__ = [
    "AuthenticationFailed",
    "CredentialResolutionError",
    "InvalidEndpoint",
    "ManifestGenerationError",
    "ProtocolError",
    "ReconcileCancelled",
    "RemoteAPIError",
    "SessionExpired",
    "SynologyError",
    "TransportError",
]
