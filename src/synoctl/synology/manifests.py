"""Manifest configuration and the declarative object set for the CSI driver.

:class:`ManifestConfig` is a validated value object: it refuses to exist
without at least one fully specified appliance endpoint. The
``client-info.yaml`` document it renders is consumed by the Synology CSI
driver and lists every endpoint with its credentials, sorted by
``(host, port, https)`` so repeated reconciliations produce byte-identical
output.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

import yaml

from ..templates import TemplateEngine, TemplateRenderError
from .credentials import Credentials
from .errors import ManifestGenerationError

APP_LABEL = "synology-csi"
LABEL_SELECTOR = {"app.kubernetes.io/name": APP_LABEL}
CSI_DRIVER_NAME = "csi.san.synology.com"
SECRET_NAME = "synology-csi-credentials"
CONTROLLER_NAME = "synology-csi-controller"
NODE_NAME = "synology-csi-node"
STORAGE_CLASS_NAME = "synology-iscsi"
CLIENT_INFO_KEY = "client-info.yaml"
DEFAULT_NAMESPACE = "kube-system"

IMAGES = {
    "driver": "synology/synology-csi:v1.1.2",
    "provisioner": "registry.k8s.io/sig-storage/csi-provisioner:v5.1.0",
    "attacher": "registry.k8s.io/sig-storage/csi-attacher:v4.7.0",
    "resizer": "registry.k8s.io/sig-storage/csi-resizer:v1.12.0",
    "snapshotter": "registry.k8s.io/sig-storage/csi-snapshotter:v8.1.0",
    "node_driver_registrar": "registry.k8s.io/sig-storage/csi-node-driver-registrar:v2.12.0",
    "liveness_probe": "registry.k8s.io/sig-storage/livenessprobe:v2.14.0",
}

_SIDECARS = (
    {"name": "csi-provisioner", "image": IMAGES["provisioner"], "args": ["--timeout=60s", "--v=5"]},
    {"name": "csi-attacher", "image": IMAGES["attacher"], "args": ["--timeout=60s", "--v=5"]},
    {
        "name": "csi-resizer",
        "image": IMAGES["resizer"],
        "args": ["--timeout=60s", "--v=5", "--handle-volume-inuse-error=false"],
    },
    {"name": "csi-snapshotter", "image": IMAGES["snapshotter"], "args": ["--timeout=60s", "--v=5"]},
)

# Rendered after the credentials secret, in apply order.
_WORKLOAD_TEMPLATES = (
    "manifests/csidriver.yaml.j2",
    "manifests/controller.yaml.j2",
    "manifests/node.yaml.j2",
    "manifests/storageclass.yaml.j2",
    "manifests/networkpolicy.yaml.j2",
)


@dataclass(frozen=True, slots=True)
class ClientConfig:
    """One appliance endpoint as the CSI driver sees it."""

    host: str
    port: int
    https: bool
    username: str
    password: str = field(repr=False)

    def validate(self) -> None:
        """Raise :class:`ManifestGenerationError` unless every field is usable."""
        if not self.host:
            raise ManifestGenerationError("Client host must not be empty.")
        if isinstance(self.port, bool) or not 1 <= self.port <= 65535:
            raise ManifestGenerationError(
                f"Invalid client port {self.port!r} for host {self.host!r}."
            )
        if not self.username:
            raise ManifestGenerationError(
                f"Client username must not be empty for host {self.host!r}."
            )
        if not self.password:
            raise ManifestGenerationError(
                f"Client password must not be empty for host {self.host!r}."
            )

    def sort_key(self) -> tuple[str, int, bool]:
        """Return the ordering key; ``https=False`` sorts first."""
        return (self.host, self.port, self.https)

    def to_dict(self) -> dict[str, object]:
        """Return the ``client-info.yaml`` entry for this endpoint."""
        return {
            "host": self.host,
            "https": self.https,
            "password": self.password,
            "port": self.port,
            "username": self.username,
        }


@dataclass(frozen=True, slots=True)
class ManifestConfig:
    """Validated inputs for the declarative object set of one tenant."""

    namespace: str
    credentials: Credentials
    clients: tuple[ClientConfig, ...]
    chap: Credentials | None = None
    storage_class_parameters: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Reject configurations the CSI driver could not use."""
        if not self.namespace.strip():
            raise ManifestGenerationError("Target namespace must not be empty.")
        if not self.credentials.is_complete():
            raise ManifestGenerationError("Tenant credentials must not be empty.")
        object.__setattr__(self, "clients", tuple(self.clients))
        if not self.clients:
            raise ManifestGenerationError("At least one client endpoint is required.")
        for client in self.clients:
            client.validate()
        if self.chap is not None and not self.chap.is_complete():
            raise ManifestGenerationError("CHAP credentials must not be empty when enabled.")

    @classmethod
    def from_endpoint(
        cls,
        *,
        url: str,
        namespace: str,
        credentials: Credentials,
        extra_ports: Iterable[int] = (),
        chap: Credentials | None = None,
        storage_class_parameters: Mapping[str, str] | None = None,
    ) -> ManifestConfig:
        """Build a config with one client per port of the appliance at *url*."""
        host, port, https = parse_endpoint(url)
        clients: list[ClientConfig] = []
        seen: set[tuple[str, int, bool]] = set()
        for candidate in (port, *extra_ports):
            client = ClientConfig(
                host=host,
                port=candidate,
                https=https,
                username=credentials.username,
                password=credentials.password,
            )
            if client.sort_key() in seen:
                continue
            seen.add(client.sort_key())
            clients.append(client)

        return cls(
            namespace=namespace,
            credentials=credentials,
            clients=tuple(clients),
            chap=chap,
            storage_class_parameters=dict(storage_class_parameters or {}),
        )

    @property
    def primary_host(self) -> str:
        """Return the host of the first configured endpoint."""
        return self.clients[0].host


def parse_endpoint(url: str) -> tuple[str, int, bool]:
    """Return ``(host, port, https)`` for an appliance URL with an explicit port."""
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.hostname:
        raise ManifestGenerationError(f"Appliance URL {url!r} lacks a scheme or host.")
    try:
        port = parsed.port
    except ValueError as exc:
        raise ManifestGenerationError(f"Invalid port in appliance URL {url!r}.") from exc
    if port is None:
        raise ManifestGenerationError(f"Appliance URL must include an explicit port (got {url!r}).")
    return parsed.hostname, port, parsed.scheme == "https"


def render_client_info(clients: Sequence[ClientConfig]) -> str:
    """Render the ``client-info.yaml`` document for *clients*."""
    if not clients:
        raise ManifestGenerationError("No clients configured.")
    for client in clients:
        client.validate()
    ordered = sorted(clients, key=ClientConfig.sort_key)
    return yaml.safe_dump(
        {"clients": [client.to_dict() for client in ordered]},
        sort_keys=True,
        default_flow_style=False,
    )


def build_credentials_secret(config: ManifestConfig) -> dict[str, Any]:
    """Return the Secret carrying ``client-info.yaml`` and the tenant credentials."""
    string_data = {
        CLIENT_INFO_KEY: render_client_info(config.clients),
        "user": config.credentials.username,
        "password": config.credentials.password,
    }
    if config.chap is not None:
        string_data["chapUser"] = config.chap.username
        string_data["chapPassword"] = config.chap.password
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {
            "name": SECRET_NAME,
            "namespace": config.namespace,
            "labels": dict(LABEL_SELECTOR),
        },
        "type": "Opaque",
        "stringData": string_data,
    }


@dataclass(slots=True)
class ManifestBuilder:
    """Assemble the full object set the tenant cluster needs."""

    templates: TemplateEngine

    def build(self, config: ManifestConfig) -> list[dict[str, Any]]:
        """Return the objects for *config* in apply order."""
        parameters = dict(config.storage_class_parameters)
        parameters.setdefault("dsm", config.primary_host)
        context: dict[str, object] = {
            "namespace": config.namespace,
            "app_label": APP_LABEL,
            "driver_name": CSI_DRIVER_NAME,
            "secret_name": SECRET_NAME,
            "storage_class_name": STORAGE_CLASS_NAME,
            "names": {"controller": CONTROLLER_NAME, "node": NODE_NAME},
            "images": IMAGES,
            "sidecars": _SIDECARS,
            "storage_class_parameters": parameters,
        }

        objects = self._render("manifests/rbac.yaml.j2", context)
        objects.append(build_credentials_secret(config))
        for template_name in _WORKLOAD_TEMPLATES:
            objects.extend(self._render(template_name, context))
        return objects

    def _render(self, template_name: str, context: Mapping[str, object]) -> list[dict[str, Any]]:
        try:
            text = self.templates.render_to_string(template_name, context)
            documents = list(yaml.safe_load_all(text))
        except (TemplateRenderError, yaml.YAMLError) as exc:
            raise ManifestGenerationError(f"Failed to render {template_name}: {exc}") from exc
        objects: list[dict[str, Any]] = []
        for document in documents:
            if document is None:
                continue
            if not isinstance(document, dict) or "kind" not in document:
                raise ManifestGenerationError(
                    f"Template {template_name} produced a document without a kind."
                )
            objects.append(document)
        return objects


__all__ = [
    "APP_LABEL",
    "CLIENT_INFO_KEY",
    "CONTROLLER_NAME",
    "CSI_DRIVER_NAME",
    "ClientConfig",
    "DEFAULT_NAMESPACE",
    "LABEL_SELECTOR",
    "ManifestBuilder",
    "ManifestConfig",
    "NODE_NAME",
    "SECRET_NAME",
    "STORAGE_CLASS_NAME",
    "build_credentials_secret",
    "parse_endpoint",
    "render_client_info",
]
