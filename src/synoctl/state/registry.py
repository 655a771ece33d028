"""YAML-backed registry of managed resources applied to tenant clusters.

Each tenant control namespace owns a directory below the registry root. A
managed resource is one YAML file in that directory holding the full list of
declarative objects last applied under its name::

    <root>/<namespace>/<name>.yml

Writes are atomic (temporary file plus ``os.replace``) so a crashed
reconciliation never leaves a half-written object set behind.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping, Sequence
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage synoctl state. Install with `pip install synoctl`."
    ) from exc

REGISTRY_SUFFIX = ".yml"


class ResourceRegistryError(RuntimeError):
    """Raised when registry operations fail."""


@dataclass(frozen=True)
class ResourceRegistry:
    """Apply, inspect, and delete managed object sets per namespace."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", self.root.expanduser())

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def path_for(self, namespace: str, name: str) -> Path:
        """Return the filesystem path for a managed resource."""
        return self.root / _safe_segment(namespace) / f"{_safe_segment(name)}{REGISTRY_SUFFIX}"

    def read(self, namespace: str, name: str) -> list[dict[str, Any]] | None:
        """Return the objects stored under *name*, or ``None`` when absent."""
        path = self.path_for(namespace, name)
        if not path.exists():
            return None
        return _load_objects(path)

    def apply(
        self,
        namespace: str,
        name: str,
        objects: Sequence[Mapping[str, Any]],
        *,
        annotations: Mapping[str, str] | None = None,
    ) -> bool:
        """Store *objects* under *name*; return ``True`` when the content changed.

        *annotations* are kept next to the objects and describe where they
        came from (for example the appliance they were issued against).
        """
        payload = [deepcopy(dict(obj)) for obj in objects]
        notes = {str(key): str(value) for key, value in (annotations or {}).items()}
        path = self.path_for(namespace, name)
        if path.exists():
            document = _load_document(path)
            if _objects_from(document, path) == payload and _annotations_from(document) == notes:
                return False
        document = {"name": name, "objects": payload}
        if notes:
            document["annotations"] = notes
        self._write(path, document)
        return True

    def annotations(self, namespace: str, name: str) -> dict[str, str]:
        """Return the annotations stored with *name*; empty when absent."""
        path = self.path_for(namespace, name)
        if not path.exists():
            return {}
        return _annotations_from(_load_document(path))

    def delete(self, namespace: str, name: str) -> bool:
        """Remove the managed resource *name*; return ``False`` when already gone."""
        path = self.path_for(namespace, name)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise ResourceRegistryError(f"Failed to delete {path}: {exc}") from exc
        return True

    def delete_all_of(
        self,
        namespace: str,
        kind: str,
        labels: Mapping[str, str],
    ) -> int:
        """Drop every *kind* object matching *labels*; return how many were removed.

        A namespace without managed resources is not an error.
        """
        removed = 0
        for path in self._resource_paths(namespace):
            document = _load_document(path)
            objects = _objects_from(document, path)
            kept = [obj for obj in objects if not _matches(obj, kind, labels)]
            if len(kept) == len(objects):
                continue
            removed += len(objects) - len(kept)
            self._write(path, {**document, "objects": kept})
        return removed

    def read_secret(self, namespace: str, name: str) -> dict[str, str] | None:
        """Return the string data of Secret *name* applied from *namespace*."""
        for path in self._resource_paths(namespace):
            for obj in _load_objects(path):
                if obj.get("kind") != "Secret":
                    continue
                metadata = obj.get("metadata")
                if not isinstance(metadata, Mapping) or metadata.get("name") != name:
                    continue
                data = obj.get("stringData")
                if not isinstance(data, Mapping):
                    return {}
                return {str(key): str(value) for key, value in data.items()}
        return None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _resource_paths(self, namespace: str) -> list[Path]:
        directory = self.root / _safe_segment(namespace)
        if not directory.is_dir():
            return []
        return sorted(directory.glob(f"*{REGISTRY_SUFFIX}"))

    def _write(self, path: Path, payload: Mapping[str, object]) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ResourceRegistryError(f"Failed to create {path.parent}: {exc}") from exc

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(dict(payload), handle, sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, 0o600)
        except OSError as exc:
            raise ResourceRegistryError(f"Failed to write {path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


def _safe_segment(value: str) -> str:
    segment = value.strip()
    if not segment or segment in {".", ".."} or "/" in segment or os.sep in segment:
        raise ResourceRegistryError(f"Invalid registry path segment {value!r}.")
    return segment


def _load_document(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
        raise ResourceRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
    except OSError as exc:
        raise ResourceRegistryError(f"Failed to read registry file {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ResourceRegistryError(f"Registry file {path} must contain a mapping.")
    return data


def _objects_from(document: Mapping[str, Any], path: Path) -> list[dict[str, Any]]:
    objects = document.get("objects", [])
    if not isinstance(objects, list):
        raise ResourceRegistryError(f"Registry file {path} has a malformed 'objects' list.")
    return [obj for obj in objects if isinstance(obj, dict)]


def _load_objects(path: Path) -> list[dict[str, Any]]:
    return _objects_from(_load_document(path), path)


def _annotations_from(document: Mapping[str, Any]) -> dict[str, str]:
    notes = document.get("annotations")
    if not isinstance(notes, Mapping):
        return {}
    return {str(key): str(value) for key, value in notes.items()}


def _matches(obj: Mapping[str, Any], kind: str, labels: Mapping[str, str]) -> bool:
    if obj.get("kind") != kind:
        return False
    metadata = obj.get("metadata")
    if not isinstance(metadata, Mapping):
        return not labels
    object_labels = metadata.get("labels")
    if not isinstance(object_labels, Mapping):
        return not labels
    return all(object_labels.get(key) == value for key, value in labels.items())


__all__ = ["ResourceRegistry", "ResourceRegistryError"]
