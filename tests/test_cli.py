"""Tests for the synoctl CLI."""
from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from synoctl import __version__
from synoctl.cli import app
from synoctl.state import ResourceRegistry
from synoctl.synology.client import SynologyClient
from tests.fakes import NAS_URL, FakeDSM, write_admin_secret

runner = CliRunner()


def _extract_json(output: str) -> dict[str, object]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


def _prepare_environment(
    tmp_path: Path,
    *,
    synology: dict[str, object] | None = None,
    admin_secret: bool = True,
) -> tuple[dict[str, str], Path]:
    state_dir = tmp_path / "state"
    settings: dict[str, object] = {
        "url": NAS_URL,
        "secret_ref": "garden/synology-admin",
        "storage_classes": {"iscsi": {"parameters": {"fsType": "ext4"}}},
    }
    settings.update(synology or {})
    config = {
        "state_dir": str(state_dir),
        "logs_dir": str(tmp_path / "logs"),
        "templates_dir": str(tmp_path / "templates"),
        "synology": settings,
    }
    config_file = tmp_path / "synoctl.yml"
    config_file.write_text(yaml.safe_dump(config), encoding="utf-8")
    if admin_secret:
        write_admin_secret(state_dir / "secrets")
    return {"SYNOCTL_CONFIG_FILE": str(config_file)}, state_dir


@pytest.fixture
def appliance(dsm: FakeDSM, monkeypatch: pytest.MonkeyPatch) -> FakeDSM:
    """Route every client the CLI builds to the simulated appliance."""

    def client(url: str, username: str, password: str, **kwargs: object) -> SynologyClient:
        return SynologyClient(url, username, password, session=dsm, **kwargs)  # type: ignore[arg-type]

    monkeypatch.setattr("synoctl.actuator.SynologyClient", client)
    return dsm


def test_version_option_outputs_package_version(tmp_path: Path) -> None:
    """CLI ``--version`` flag emits the package version."""
    env, _ = _prepare_environment(tmp_path)
    result = runner.invoke(app, ["--version"], env=env)

    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_invocation_without_subcommand_shows_help(tmp_path: Path) -> None:
    """Calling the CLI without a subcommand shows help output."""
    env, _ = _prepare_environment(tmp_path)
    result = runner.invoke(app, env=env)

    assert result.exit_code == 0
    assert "Synology CSI tenant credential manager" in result.stdout


def test_invalid_config_file_exits_with_validation_code(tmp_path: Path) -> None:
    """Unknown configuration keys stop the CLI with exit code 2."""
    config_file = tmp_path / "broken.yml"
    config_file.write_text("bogus: 1\n", encoding="utf-8")

    result = runner.invoke(app, ["--config-file", str(config_file), "config", "show"])

    assert result.exit_code == 2
    assert "bogus" in result.stdout


def test_config_show_renders_table(tmp_path: Path) -> None:
    """`config show` prints the merged configuration in a table."""
    env, state_dir = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["config", "show"], env=env)

    assert result.exit_code == 0
    assert "state_dir" in result.stdout
    assert "synology" in result.stdout
    assert "templates_dir" in result.stdout


def test_config_show_json(tmp_path: Path) -> None:
    """`config show --json` emits JSON with the resolved configuration."""
    env, state_dir = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["config", "show", "--json"], env=env)

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["state_dir"] == str(state_dir)
    assert payload["secrets_dir"] == str(state_dir / "secrets")
    assert payload["synology"]["url"] == NAS_URL  # type: ignore[index]


def test_config_validate_accepts_complete_config(tmp_path: Path) -> None:
    """A complete configuration validates."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["config", "validate"], env=env)

    assert result.exit_code == 0
    assert "Configuration OK" in result.stdout


def test_config_validate_reports_problems(tmp_path: Path) -> None:
    """Missing settings are listed and exit with code 2."""
    env, _ = _prepare_environment(tmp_path, synology={"url": "", "secret_ref": ""})

    result = runner.invoke(app, ["config", "validate"], env=env)

    assert result.exit_code == 2
    assert "synology.url" in result.stdout
    assert "synology.secret_ref" in result.stdout


def test_username_prints_derived_name(tmp_path: Path) -> None:
    """`username` prints the DSM username for a tenant."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["username", "Foo", "bar"], env=env)

    assert result.exit_code == 0
    assert result.stdout.strip() == "gardener-bar-foo"


def test_blank_tenant_name_is_rejected(tmp_path: Path) -> None:
    """Blank identities exit with the validation code."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["username", " ", "bar"], env=env)

    assert result.exit_code == 2


def test_reconcile_creates_user_and_records_objects(tmp_path: Path, appliance: FakeDSM) -> None:
    """`reconcile` provisions the DSM user and writes the registry entry."""
    env, state_dir = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["reconcile", "foo", "bar"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "Created DSM user gardener-bar-foo" in result.stdout
    assert "gardener-bar-foo" in appliance.users
    registry = ResourceRegistry(state_dir / "registry")
    assert registry.read("bar", "csi.san.synology.com")


def test_reconcile_twice_recovers_password(tmp_path: Path, appliance: FakeDSM) -> None:
    """The second reconcile reuses the stored credentials."""
    env, _ = _prepare_environment(tmp_path)
    runner.invoke(app, ["reconcile", "foo", "bar"], env=env)

    result = runner.invoke(app, ["reconcile", "foo", "bar"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "Recovered DSM user" in result.stdout
    assert "unchanged" in result.stdout


def test_reconcile_with_provider_config_file(tmp_path: Path, appliance: FakeDSM) -> None:
    """A provider config file is decoded and applied."""
    env, state_dir = _prepare_environment(tmp_path)
    shoot = tmp_path / "shoot.yaml"
    shoot.write_text("chapEnabled: true\n", encoding="utf-8")

    result = runner.invoke(
        app, ["reconcile", "foo", "bar", "--provider-config", str(shoot)], env=env
    )

    assert result.exit_code == 0, result.stdout
    secret = ResourceRegistry(state_dir / "registry").read_secret("bar", "synology-csi-credentials")
    assert secret is not None and secret["chapUser"] == "gardener-bar-foo-chap"


def test_reconcile_rejects_bad_provider_config(tmp_path: Path, appliance: FakeDSM) -> None:
    """Malformed provider config exits with the validation code."""
    env, _ = _prepare_environment(tmp_path)
    shoot = tmp_path / "shoot.yaml"
    shoot.write_text("unexpected: true\n", encoding="utf-8")

    result = runner.invoke(
        app, ["reconcile", "foo", "bar", "--provider-config", str(shoot)], env=env
    )

    assert result.exit_code == 2
    assert appliance.calls == []


def test_provider_config_without_url_still_needs_configured_url(
    tmp_path: Path, appliance: FakeDSM
) -> None:
    """A tenant document that sets no URL does not waive synology.url."""
    env, _ = _prepare_environment(tmp_path, synology={"url": ""})
    shoot = tmp_path / "shoot.yaml"
    shoot.write_text("chapEnabled: true\n", encoding="utf-8")

    result = runner.invoke(
        app, ["reconcile", "foo", "bar", "--provider-config", str(shoot)], env=env
    )

    assert result.exit_code == 2
    assert "synology.url" in result.stdout
    assert appliance.calls == []


def test_tenant_url_replaces_missing_configured_url(tmp_path: Path, appliance: FakeDSM) -> None:
    """A tenant synologyUrl lets reconcile run without synology.url."""
    env, _ = _prepare_environment(tmp_path, synology={"url": ""})
    shoot = tmp_path / "shoot.yaml"
    shoot.write_text("synologyUrl: https://tenant.example:5001\n", encoding="utf-8")

    result = runner.invoke(
        app, ["reconcile", "foo", "bar", "--provider-config", str(shoot)], env=env
    )

    assert result.exit_code == 0, result.stdout
    assert "gardener-bar-foo" in appliance.users


def test_reconcile_with_incomplete_config_exits_early(tmp_path: Path, appliance: FakeDSM) -> None:
    """Missing configuration is reported before any appliance call."""
    env, _ = _prepare_environment(tmp_path, synology={"storage_classes": {"iscsi": {"parameters": {}}}})

    result = runner.invoke(app, ["reconcile", "foo", "bar"], env=env)

    assert result.exit_code == 2
    assert appliance.calls == []


def test_reconcile_without_admin_secret_is_environment_error(
    tmp_path: Path, appliance: FakeDSM
) -> None:
    """Unresolvable admin credentials exit with code 3."""
    env, _ = _prepare_environment(tmp_path, admin_secret=False)

    result = runner.invoke(app, ["reconcile", "foo", "bar"], env=env)

    assert result.exit_code == 3


def test_reconcile_login_failure_is_provider_error(tmp_path: Path, appliance: FakeDSM) -> None:
    """Appliance failures exit with code 4."""
    env, _ = _prepare_environment(tmp_path)
    appliance.admin = ("admin", "rotated")

    result = runner.invoke(app, ["reconcile", "foo", "bar"], env=env)

    assert result.exit_code == 4
    assert "error code 400" in result.stdout


def test_restore_converges(tmp_path: Path, appliance: FakeDSM) -> None:
    """`restore` behaves like reconcile."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["restore", "foo", "bar"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "gardener-bar-foo" in appliance.users


def test_delete_reports_categories(tmp_path: Path, appliance: FakeDSM) -> None:
    """`delete` removes the tenant and prints a per-category table."""
    env, state_dir = _prepare_environment(tmp_path)
    runner.invoke(app, ["reconcile", "foo", "bar"], env=env)

    result = runner.invoke(app, ["delete", "foo", "bar"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "daemonset" in result.stdout
    assert "deleted" in result.stdout
    assert appliance.users == {}
    assert ResourceRegistry(state_dir / "registry").read("bar", "csi.san.synology.com") is None


def test_force_delete_tolerates_unreachable_appliance(tmp_path: Path, appliance: FakeDSM) -> None:
    """Teardown succeeds even when the appliance cannot be reached."""
    env, _ = _prepare_environment(tmp_path)
    appliance.unreachable = True

    result = runner.invoke(app, ["force-delete", "foo", "bar"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "not deleted" in result.stdout
    assert "Warning" in result.stdout


def test_migrate_is_noop(tmp_path: Path, appliance: FakeDSM) -> None:
    """`migrate` never contacts the appliance."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["migrate", "foo", "bar"], env=env)

    assert result.exit_code == 0
    assert "Nothing to migrate" in result.stdout
    assert appliance.calls == []
