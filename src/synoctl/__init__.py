"""synoctl: Synology DSM tenant credentials and CSI driver objects.

Only version metadata lives here; the actuator, client and CLI are imported
from their own modules.
"""
from __future__ import annotations

__all__ = ["__version__", "get_version"]

# NOTE: Keep in step with ``[project] version`` in ``pyproject.toml``.
__version__ = "0.1.0"


def get_version() -> str:
    """Return the installed synoctl version string."""
    return __version__
