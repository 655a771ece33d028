"""State helpers for synoctl."""
from __future__ import annotations

from .registry import ResourceRegistry, ResourceRegistryError

__all__ = ["ResourceRegistry", "ResourceRegistryError"]
