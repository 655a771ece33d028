"""Process exit codes and the mapping from failures onto them."""
from __future__ import annotations

from enum import IntEnum

from .config import ConfigError
from .providerconfig import ProviderConfigError
from .state.registry import ResourceRegistryError
from .synology.errors import CredentialResolutionError, ManifestGenerationError


class ExitCode(IntEnum):
    """Exit codes shared by every synoctl command.

    ``VALIDATION`` covers bad input (configuration, tenant identity, provider
    config). ``ENVIRONMENT`` covers local state that could not be read or
    written. ``PROVIDER`` covers failures reported by, or on the way to, the
    appliance.
    """

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4


_VALIDATION_ERRORS = (ConfigError, ProviderConfigError, ManifestGenerationError, ValueError)
_ENVIRONMENT_ERRORS = (CredentialResolutionError, ResourceRegistryError, OSError)


def exit_code_for(exc: BaseException) -> ExitCode:
    """Return the exit code a command should use after *exc*."""
    if isinstance(exc, _VALIDATION_ERRORS):
        return ExitCode.VALIDATION
    if isinstance(exc, _ENVIRONMENT_ERRORS):
        return ExitCode.ENVIRONMENT
    return ExitCode.PROVIDER


__all__ = ["ExitCode", "exit_code_for"]
