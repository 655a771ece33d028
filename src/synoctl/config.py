"""Configuration loader for synoctl.

Configuration values are merged from several sources, later ones winning:

1. Built-in defaults.
2. ``/etc/synoctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``SYNOCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export SYNOCTL_SYNOLOGY__URL=https://nas.example:5001
    export SYNOCTL_SYNOLOGY__CHAP_ENABLED=true

Values are coerced via PyYAML's ``safe_load`` so that booleans, numbers and
lists are parsed naturally. The resulting configuration is exposed as
immutable ``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Collection, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load synoctl configuration. Install with "
        "`pip install synoctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "SYNOCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class SynologyConfig:
    """Connection settings for the appliance."""

    url: str = ""
    secret_ref: str = ""
    chap_enabled: bool = False
    extra_ports: tuple[int, ...] = (5001,)
    verify_tls: bool = True
    request_timeout: float = 30.0
    iscsi_parameters: Mapping[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "url": self.url,
            "secret_ref": self.secret_ref,
            "chap_enabled": self.chap_enabled,
            "extra_ports": list(self.extra_ports),
            "verify_tls": self.verify_tls,
            "request_timeout": self.request_timeout,
            "storage_classes": {"iscsi": {"parameters": dict(self.iscsi_parameters)}},
        }


@dataclass(frozen=True)
class TenantSettings:
    """Naming defaults applied to every tenant."""

    username_prefix: str = "gardener"
    target_namespace: str = "kube-system"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "username_prefix": self.username_prefix,
            "target_namespace": self.target_namespace,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for synoctl."""

    config_file: Path
    state_dir: Path
    registry_dir: Path
    secrets_dir: Path
    logs_dir: Path
    templates_dir: Path
    synology: SynologyConfig
    tenant: TenantSettings

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "secrets_dir": str(self.secrets_dir),
            "logs_dir": str(self.logs_dir),
            "templates_dir": str(self.templates_dir),
            "synology": self.synology.to_dict(),
            "tenant": self.tenant.to_dict(),
        }

    def validate_for_actuator(self) -> list[str]:
        """Return the problems that keep the actuator from running."""
        problems: list[str] = []
        url = self.synology.url.strip()
        if not url:
            problems.append("synology.url must be set.")
        else:
            problems.extend(_url_problems(url))
        if not self.synology.secret_ref.strip():
            problems.append("synology.secret_ref must be set.")
        if not self.synology.iscsi_parameters:
            problems.append("synology.storage_classes.iscsi.parameters must be set.")
        return problems


def _url_problems(url: str) -> list[str]:
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.hostname:
        return ["synology.url must be a valid URL with scheme and host."]
    try:
        port = parsed.port
    except ValueError:
        return ["synology.url has an invalid port."]
    if port is None:
        return ["synology.url must include an explicit port."]
    return []


_SYNOLOGY_DEFAULTS: dict[str, object] = {
    "url": "",
    "secret_ref": "",
    "chap_enabled": False,
    "extra_ports": [5001],
    "verify_tls": True,
    "request_timeout": 30.0,
    "storage_classes": {"iscsi": {"parameters": {}}},
}
_TENANT_DEFAULTS: dict[str, object] = {
    "username_prefix": "gardener",
    "target_namespace": "kube-system",
}
DEFAULTS: dict[str, object] = {
    "config_file": "/etc/synoctl/config.yml",
    "state_dir": "/var/lib/synoctl",
    "registry_dir": None,  # derived from state_dir when absent
    "secrets_dir": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/synoctl",
    "templates_dir": "/etc/synoctl/templates",
    "synology": _SYNOLOGY_DEFAULTS,
    "tenant": _TENANT_DEFAULTS,
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    environ = dict(os.environ if env is None else env)
    if config_file:
        path = Path(config_file)
    elif CONFIG_ENV_VAR in environ:
        path = Path(environ[CONFIG_ENV_VAR])
    else:
        path = Path(str(DEFAULTS["config_file"]))

    merged = _merge({}, DEFAULTS)
    for layer in (_read_file(path), _env_layer(environ), dict(overrides or {})):
        merged = _merge(merged, layer)
    merged["config_file"] = str(path)

    return _build(_Section(merged, ""))


def _read_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return dict(data)


def _env_layer(environ: Mapping[str, str]) -> dict[str, object]:
    layer: dict[str, object] = {}
    for key, raw in environ.items():
        if key == CONFIG_ENV_VAR or not key.startswith(ENV_PREFIX):
            continue
        segments = [part.lower() for part in key[len(ENV_PREFIX) :].split("__") if part]
        if not segments:
            continue
        node = layer
        for segment in segments[:-1]:
            child = node.setdefault(segment, {})
            if not isinstance(child, dict):
                raise ConfigError(f"Environment variable {key} conflicts with a scalar value.")
            node = child
        node[segments[-1]] = _parse_scalar(raw)
    return layer


def _parse_scalar(raw: str) -> object:
    text = raw.strip()
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return text


def _merge(base: Mapping[str, object], layer: Mapping[str, object]) -> dict[str, object]:
    """Return *base* updated recursively with *layer*; neither input is mutated."""
    result: dict[str, object] = {}
    for source in (base, layer):
        for key, value in source.items():
            current = result.get(key)
            if isinstance(value, Mapping):
                result[key] = _merge(current if isinstance(current, Mapping) else {}, value)
            elif isinstance(value, list):
                result[key] = list(value)
            else:
                result[key] = value
    return result


def _build(root: _Section) -> AppConfig:
    root.reject_unknown(DEFAULTS)
    state_dir = root.path("state_dir")

    synology = root.section("synology")
    synology.reject_unknown(_SYNOLOGY_DEFAULTS)
    storage_classes = synology.section("storage_classes")
    storage_classes.reject_unknown({"iscsi"})
    iscsi = storage_classes.section("iscsi")
    iscsi.reject_unknown({"parameters"})
    parameters = iscsi.section("parameters")

    tenant = root.section("tenant")
    tenant.reject_unknown(_TENANT_DEFAULTS)

    return AppConfig(
        config_file=root.path("config_file"),
        state_dir=state_dir,
        registry_dir=root.path("registry_dir", default=state_dir / "registry"),
        secrets_dir=root.path("secrets_dir", default=state_dir / "secrets"),
        logs_dir=root.path("logs_dir"),
        templates_dir=root.path("templates_dir"),
        synology=SynologyConfig(
            url=synology.text("url"),
            secret_ref=synology.text("secret_ref"),
            chap_enabled=synology.flag("chap_enabled", default=False),
            extra_ports=synology.ports("extra_ports"),
            verify_tls=synology.flag("verify_tls", default=True),
            request_timeout=synology.positive_number("request_timeout", default=30.0),
            iscsi_parameters=parameters.as_strings(),
        ),
        tenant=TenantSettings(
            username_prefix=tenant.text("username_prefix", required=True),
            target_namespace=tenant.text("target_namespace", required=True),
        ),
    )


class _Section:
    """Typed accessors over one mapping of the merged configuration."""

    def __init__(self, data: Mapping[object, object], prefix: str) -> None:
        self._data = data
        self._prefix = prefix

    def _label(self, key: str) -> str:
        return f"{self._prefix}.{key}" if self._prefix else key

    def reject_unknown(self, allowed: Collection[str]) -> None:
        unknown = sorted(str(key) for key in self._data if key not in allowed)
        if unknown:
            where = f"{self._prefix} configuration" if self._prefix else "configuration"
            raise ConfigError(f"Unknown {where} keys: {', '.join(unknown)}.")

    def section(self, key: str) -> _Section:
        value = self._data.get(key)
        if value is None:
            value = {}
        if not isinstance(value, Mapping):
            raise ConfigError(
                f"Expected {self._label(key)} to be a mapping. Got {type(value).__name__}."
            )
        for name in value:
            if not isinstance(name, str):
                raise ConfigError(f"Mapping {self._label(key)} must use string keys. Got {name!r}.")
        return _Section(value, self._label(key))

    def path(self, key: str, *, default: Path | None = None) -> Path:
        value = self._data.get(key)
        if value is None or value == "":
            if default is None:
                raise ConfigError(f"{self._label(key)} must be set to a filesystem path.")
            return default
        if isinstance(value, (str, Path)):
            return Path(value).expanduser()
        raise ConfigError(f"Cannot convert {self._label(key)}={value!r} to a path.")

    def text(self, key: str, *, required: bool = False) -> str:
        value = self._data.get(key)
        if value is None:
            value = ""
        if not isinstance(value, str):
            raise ConfigError(
                f"Expected {self._label(key)} to be a string. Got {type(value).__name__}."
            )
        value = value.strip()
        if required and not value:
            raise ConfigError(f"{self._label(key)} must be a non-empty string.")
        return value

    def flag(self, key: str, *, default: bool) -> bool:
        value = self._data.get(key)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in {"true", "yes", "on", "1"}:
                return True
            if lowered in {"false", "no", "off", "0"}:
                return False
        raise ConfigError(f"Expected {self._label(key)} to be a boolean. Got {value!r}.")

    def positive_number(self, key: str, *, default: float) -> float:
        value = self._data.get(key)
        if value is None:
            return default
        if isinstance(value, bool) or not isinstance(value, (int, float, str)):
            raise ConfigError(f"Expected {self._label(key)} to be a number. Got {value!r}.")
        try:
            number = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {self._label(key)}: {value!r}.") from exc
        if number <= 0:
            raise ConfigError(f"{self._label(key)} must be greater than zero. Got {number}.")
        return number

    def ports(self, key: str) -> tuple[int, ...]:
        value = self._data.get(key)
        if value is None:
            return ()
        entries = value if isinstance(value, list) else [value]
        ports: list[int] = []
        for index, entry in enumerate(entries):
            label = f"{self._label(key)}[{index}]"
            if isinstance(entry, bool) or not isinstance(entry, (int, str)):
                raise ConfigError(f"Expected {label} to be a port number. Got {entry!r}.")
            try:
                port = int(entry)
            except ValueError as exc:
                raise ConfigError(f"Expected {label} to be a port number. Got {entry!r}.") from exc
            if not 1 <= port <= 65535:
                raise ConfigError(f"{label} must be between 1 and 65535. Got {port}.")
            ports.append(port)
        return tuple(ports)

    def as_strings(self) -> dict[str, str]:
        return {str(key): "" if value is None else str(value) for key, value in self._data.items()}


__all__ = [
    "AppConfig",
    "ConfigError",
    "SynologyConfig",
    "TenantSettings",
    "load_config",
]
