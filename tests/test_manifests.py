"""Tests for manifest configuration and the CSI object set."""
from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from synoctl.synology.credentials import Credentials
from synoctl.synology.errors import ManifestGenerationError
from synoctl.synology.manifests import (
    CLIENT_INFO_KEY,
    SECRET_NAME,
    ClientConfig,
    ManifestBuilder,
    ManifestConfig,
    build_credentials_secret,
    render_client_info,
)
from synoctl.templates import TemplateEngine

TENANT = Credentials(username="gardener-bar-foo", password="Secret-Password1")


def _client(**overrides: object) -> ClientConfig:
    values: dict[str, object] = {
        "host": "nas.example",
        "port": 5001,
        "https": True,
        "username": "gardener-bar-foo",
        "password": "Secret-Password1",
    }
    values.update(overrides)
    return ClientConfig(**values)  # type: ignore[arg-type]


def test_render_client_info_single_endpoint_is_deterministic() -> None:
    """One endpoint renders with keys in fixed order."""
    text = render_client_info([_client()])

    assert text == (
        "clients:\n"
        "- host: nas.example\n"
        "  https: true\n"
        "  password: Secret-Password1\n"
        "  port: 5001\n"
        "  username: gardener-bar-foo\n"
    )


def test_render_client_info_sorts_by_host_port_scheme() -> None:
    """Entries are ordered by host, then port, then https (false first)."""
    clients = [
        _client(host="nas-b", port=5000, https=False),
        _client(host="nas-a", port=5001, https=True),
        _client(host="nas-a", port=5000, https=True),
        _client(host="nas-a", port=5000, https=False),
    ]

    entries = yaml.safe_load(render_client_info(clients))["clients"]

    assert [(entry["host"], entry["port"], entry["https"]) for entry in entries] == [
        ("nas-a", 5000, False),
        ("nas-a", 5000, True),
        ("nas-a", 5001, True),
        ("nas-b", 5000, False),
    ]


def test_render_client_info_rejects_empty_list() -> None:
    """Zero endpoints is an error."""
    with pytest.raises(ManifestGenerationError):
        render_client_info([])


@pytest.mark.parametrize(
    "overrides",
    [
        {"username": ""},
        {"password": ""},
        {"host": ""},
        {"port": 0},
        {"port": 65536},
    ],
)
def test_incomplete_endpoint_is_rejected(overrides: dict[str, object]) -> None:
    """Every endpoint needs host, valid port, and credentials."""
    with pytest.raises(ManifestGenerationError):
        render_client_info([_client(**overrides)])
    with pytest.raises(ManifestGenerationError):
        ManifestConfig(namespace="kube-system", credentials=TENANT, clients=(_client(**overrides),))


def test_manifest_config_requires_endpoint() -> None:
    """A config without clients cannot be constructed."""
    with pytest.raises(ManifestGenerationError):
        ManifestConfig(namespace="kube-system", credentials=TENANT, clients=())


def test_manifest_config_rejects_incomplete_chap() -> None:
    """CHAP credentials must be complete when given."""
    with pytest.raises(ManifestGenerationError):
        ManifestConfig(
            namespace="kube-system",
            credentials=TENANT,
            clients=(_client(),),
            chap=Credentials(username="x-chap", password=""),
        )


def test_from_endpoint_adds_extra_ports_without_duplicates() -> None:
    """Extra ports become additional clients; repeats collapse."""
    config = ManifestConfig.from_endpoint(
        url="https://nas.example:5000",
        namespace="kube-system",
        credentials=TENANT,
        extra_ports=(5001, 5000, 5001),
    )

    assert [(client.host, client.port, client.https) for client in config.clients] == [
        ("nas.example", 5000, True),
        ("nas.example", 5001, True),
    ]
    assert all(client.username == TENANT.username for client in config.clients)
    assert config.primary_host == "nas.example"


@pytest.mark.parametrize("url", ["https://nas.example", "nas.example:5000", "https://nas.example:99999"])
def test_from_endpoint_rejects_unusable_url(url: str) -> None:
    """The appliance URL needs scheme, host, and a valid explicit port."""
    with pytest.raises(ManifestGenerationError):
        ManifestConfig.from_endpoint(url=url, namespace="kube-system", credentials=TENANT)


def test_credentials_secret_carries_client_info_and_chap() -> None:
    """The Secret holds client-info.yaml plus user and CHAP keys."""
    config = ManifestConfig.from_endpoint(
        url="http://nas.example:5000",
        namespace="kube-system",
        credentials=TENANT,
        chap=Credentials(username="gardener-bar-foo-chap", password="Chap-Password-01"),
    )

    secret = build_credentials_secret(config)

    assert secret["metadata"]["name"] == SECRET_NAME
    assert secret["metadata"]["namespace"] == "kube-system"
    data = secret["stringData"]
    assert data["user"] == "gardener-bar-foo"
    assert data["password"] == "Secret-Password1"
    assert data["chapUser"] == "gardener-bar-foo-chap"
    assert data["chapPassword"] == "Chap-Password-01"
    client_info = yaml.safe_load(data[CLIENT_INFO_KEY])
    assert client_info["clients"][0]["https"] is False


def test_credentials_secret_omits_chap_when_disabled() -> None:
    """No CHAP keys without CHAP credentials."""
    config = ManifestConfig.from_endpoint(
        url="https://nas.example:5001", namespace="kube-system", credentials=TENANT
    )

    assert "chapUser" not in build_credentials_secret(config)["stringData"]


def test_builder_emits_objects_in_apply_order() -> None:
    """RBAC first, then the secret, workloads, storage class, network policy."""
    builder = ManifestBuilder(TemplateEngine.with_overrides(None))
    config = ManifestConfig.from_endpoint(
        url="https://nas.example:5001",
        namespace="kube-system",
        credentials=TENANT,
        storage_class_parameters={"fsType": "ext4"},
    )

    objects = builder.build(config)

    assert [obj["kind"] for obj in objects] == [
        "ServiceAccount",
        "ServiceAccount",
        "ClusterRole",
        "ClusterRole",
        "ClusterRoleBinding",
        "ClusterRoleBinding",
        "Secret",
        "CSIDriver",
        "Service",
        "Deployment",
        "DaemonSet",
        "StorageClass",
        "NetworkPolicy",
    ]
    for obj in objects:
        assert obj["metadata"]["labels"]["app.kubernetes.io/name"] == "synology-csi"
    storage_class = objects[-2]
    assert storage_class["parameters"] == {"dsm": "nas.example", "fsType": "ext4"}


def test_builder_workloads_mount_credentials_secret() -> None:
    """Controller and node read client-info.yaml from the credentials secret."""
    builder = ManifestBuilder(TemplateEngine.with_overrides(None))
    config = ManifestConfig.from_endpoint(
        url="https://nas.example:5001", namespace="kube-system", credentials=TENANT
    )

    objects = {obj["kind"]: obj for obj in builder.build(config)}

    for kind in ("Deployment", "DaemonSet"):
        volumes = objects[kind]["spec"]["template"]["spec"]["volumes"]
        client_info = next(volume for volume in volumes if volume["name"] == "client-info")
        assert client_info["secret"]["secretName"] == SECRET_NAME


def test_builder_is_stable_across_runs() -> None:
    """Identical input yields identical objects."""
    builder = ManifestBuilder(TemplateEngine.with_overrides(None))
    config = ManifestConfig.from_endpoint(
        url="https://nas.example:5001",
        namespace="kube-system",
        credentials=TENANT,
        extra_ports=(5000,),
    )

    assert builder.build(config) == builder.build(config)


def test_builder_wraps_template_failures(tmp_path: Path) -> None:
    """Broken override templates surface as ManifestGenerationError."""
    override = tmp_path / "manifests"
    override.mkdir()
    (override / "csidriver.yaml.j2").write_text("kind: {{ missing_variable }}\n", encoding="utf-8")
    builder = ManifestBuilder(TemplateEngine.with_overrides(tmp_path))
    config = ManifestConfig.from_endpoint(
        url="https://nas.example:5001", namespace="kube-system", credentials=TENANT
    )

    with pytest.raises(ManifestGenerationError):
        builder.build(config)
