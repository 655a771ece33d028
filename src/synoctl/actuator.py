"""Credential reconciliation actuator.

The actuator converges one tenant's appliance account and its declarative
object set:

* :meth:`Actuator.reconcile` is fail-fast. Every step up to rendering the
  manifests must succeed before anything is applied, and a user created by
  a run that then fails is deleted again.
* :meth:`Actuator.delete` is best-effort. Appliance problems are logged and
  absorbed, and each object category is removed independently.

``restore`` converges exactly like ``reconcile``, ``force_delete`` tears down
exactly like ``delete``, and ``migrate`` has no remote side effects.
"""
from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from functools import partial
from typing import Any

from .config import AppConfig
from .logging import OperationScope, StructuredLogger
from .providerconfig import ProviderConfigDecoder
from .secrets import (
    FileSecretStore,
    SecretReader,
    recover_tenant_credentials,
    resolve_admin_credentials,
)
from .state.registry import ResourceRegistry, ResourceRegistryError
from .synology.client import SynologyClient
from .synology.credentials import (
    Credentials,
    TenantIdentity,
    generate_chap_credentials,
    generate_password,
    tenant_username,
)
from .synology.errors import CredentialResolutionError, ReconcileCancelled, SynologyError
from .synology.manifests import (
    CSI_DRIVER_NAME,
    LABEL_SELECTOR,
    SECRET_NAME,
    ManifestBuilder,
    ManifestConfig,
    parse_endpoint,
)
from .templates import TemplateEngine

LOGGER = logging.getLogger(__name__)

MANAGED_RESOURCE_NAME = CSI_DRIVER_NAME
APPLIANCE_URL_ANNOTATION = "synology.csi/appliance-url"

# Removal order for teardown: workloads first, RBAC and accounts last.
TEARDOWN_KINDS = (
    "DaemonSet",
    "Deployment",
    "Service",
    "CSIDriver",
    "ConfigMap",
    "Secret",
    "ClusterRoleBinding",
    "ClusterRole",
    "ServiceAccount",
    "StorageClass",
    "NetworkPolicy",
)

ClientFactory = Callable[[str, Credentials], SynologyClient]


@dataclass(frozen=True, slots=True)
class DesiredState:
    """Tenant identity plus the raw tenant-supplied provider configuration."""

    identity: TenantIdentity
    provider_config: bytes | str | Mapping[str, object] | None = None


@dataclass(frozen=True, slots=True)
class ReconcileResult:
    """Outcome of a successful reconciliation."""

    username: str
    user_created: bool
    changed: bool
    object_count: int
    warnings: tuple[str, ...] = ()


@dataclass(slots=True)
class CategoryOutcome:
    """Result of deleting one object category."""

    category: str
    removed: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        """Return ``True`` when the category was deleted without error."""
        return self.error is None


@dataclass(slots=True)
class TeardownReport:
    """Per-step results of a teardown."""

    username: str
    user_deleted: bool = False
    categories: list[CategoryOutcome] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def failed_categories(self) -> list[str]:
        """Return the categories whose deletion failed."""
        return [outcome.category for outcome in self.categories if not outcome.ok]

    @property
    def ok(self) -> bool:
        """Return ``True`` when every best-effort step succeeded."""
        return not self.warnings and not self.failed_categories

    def to_dict(self) -> dict[str, Any]:
        """Return a serialisable representation."""
        return {
            "username": self.username,
            "user_deleted": self.user_deleted,
            "categories": [
                {"category": item.category, "removed": item.removed, "error": item.error}
                for item in self.categories
            ],
            "warnings": list(self.warnings),
        }


class Actuator:
    """Bring tenant credentials and manifests to their desired state."""

    def __init__(
        self,
        config: AppConfig,
        *,
        secrets: SecretReader,
        registry: ResourceRegistry,
        builder: ManifestBuilder,
        logger: StructuredLogger,
        decoder: ProviderConfigDecoder | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        """Wire the actuator to its collaborators."""
        self._config = config
        self._secrets = secrets
        self._registry = registry
        self._builder = builder
        self._logger = logger
        self._decoder = decoder or ProviderConfigDecoder()
        self._client_factory = client_factory or self._default_client

    @classmethod
    def from_config(cls, config: AppConfig) -> Actuator:
        """Build an actuator with file-backed collaborators from *config*."""
        return cls(
            config,
            secrets=FileSecretStore(config.secrets_dir),
            registry=ResourceRegistry(config.registry_dir),
            builder=ManifestBuilder(TemplateEngine.with_overrides(config.templates_dir)),
            logger=StructuredLogger(config.logs_dir),
            decoder=ProviderConfigDecoder(),
        )

    def username_for(self, identity: TenantIdentity) -> str:
        """Return the appliance username for *identity*."""
        return tenant_username(identity, self._config.tenant.username_prefix)

    # ------------------------------------------------------------------
    # Convergence
    # ------------------------------------------------------------------
    def reconcile(
        self,
        state: DesiredState,
        *,
        cancel: threading.Event | None = None,
    ) -> ReconcileResult:
        """Create or recover the tenant account and apply its object set."""
        return self._converge("reconcile", state, cancel)

    def restore(
        self,
        state: DesiredState,
        *,
        cancel: threading.Event | None = None,
    ) -> ReconcileResult:
        """Converge after a control-plane move; identical to :meth:`reconcile`."""
        return self._converge("restore", state, cancel)

    def migrate(self, state: DesiredState) -> None:
        """Hand the tenant over without touching the appliance."""
        identity = state.identity
        with self._logger.operation("migrate", target=_target(identity)) as op:
            op.success("No remote changes required for migration.", changed=0)

    def _converge(
        self,
        command: str,
        state: DesiredState,
        cancel: threading.Event | None,
    ) -> ReconcileResult:
        identity = state.identity
        username = self.username_for(identity)
        synology = self._config.synology

        with self._logger.operation(
            command,
            args={"provider_config": state.provider_config is not None},
            target={**_target(identity), "username": username},
        ) as op:
            tenant = self._decoder.decode(state.provider_config)
            for warning in tenant.warnings:
                op.add_step("providerconfig.decode", status="warning", detail=warning)
            url = tenant.synology_url or synology.url
            parse_endpoint(url)
            chap_enabled = synology.chap_enabled if tenant.chap_enabled is None else tenant.chap_enabled

            _check_cancelled(cancel, "credential resolution")
            admin = resolve_admin_credentials(self._secrets, synology.secret_ref)
            op.add_step("credentials.resolve")

            client = self._client_factory(url, admin)
            created = False
            try:
                _check_cancelled(cancel, "login")
                client.login()
                op.add_step("session.login")

                _check_cancelled(cancel, "user lookup")
                user = client.get_user(username)
                op.add_step("user.lookup", detail={"exists": user is not None})

                if user is None:
                    _check_cancelled(cancel, "user creation")
                    credentials = Credentials(username=username, password=generate_password())
                    client.create_user(username, credentials.password)
                    created = True
                    op.add_step("user.create")
                else:
                    credentials = recover_tenant_credentials(
                        self._registry,
                        identity.namespace,
                        SECRET_NAME,
                        expected_username=username,
                    )
                    op.add_step("password.recover")

                chap = generate_chap_credentials(username) if chap_enabled else None
                manifest = ManifestConfig.from_endpoint(
                    url=url,
                    namespace=self._config.tenant.target_namespace,
                    credentials=credentials,
                    extra_ports=synology.extra_ports,
                    chap=chap,
                    storage_class_parameters=synology.iscsi_parameters,
                )
                objects = self._builder.build(manifest)
                op.add_step("manifests.render", detail={"objects": len(objects)})

                _check_cancelled(cancel, "apply")
                changed = self._registry.apply(
                    identity.namespace,
                    MANAGED_RESOURCE_NAME,
                    objects,
                    annotations={APPLIANCE_URL_ANNOTATION: url},
                )
                op.add_step("resources.apply", detail={"changed": changed})
            except (SynologyError, ResourceRegistryError):
                # A fresh password only survives in the applied secret.
                if created:
                    self._roll_back_user(client, username, op)
                raise
            finally:
                self._release(client, op)

            result = ReconcileResult(
                username=username,
                user_created=user is None,
                changed=changed,
                object_count=len(objects),
                warnings=tenant.warnings,
            )
            message = f"Reconciled tenant {identity.namespace}/{identity.name}."
            if tenant.warnings:
                op.warning(message, warnings=tenant.warnings, changed=int(changed))
            else:
                op.success(message, changed=int(changed))
            return result

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------
    def delete(
        self,
        identity: TenantIdentity,
        *,
        cancel: threading.Event | None = None,
    ) -> TeardownReport:
        """Remove the tenant account and every declared object category."""
        return self._teardown("delete", identity, cancel)

    def force_delete(
        self,
        identity: TenantIdentity,
        *,
        cancel: threading.Event | None = None,
    ) -> TeardownReport:
        """Tear the tenant down; identical to :meth:`delete`."""
        return self._teardown("force-delete", identity, cancel)

    def _teardown(
        self,
        command: str,
        identity: TenantIdentity,
        cancel: threading.Event | None,
    ) -> TeardownReport:
        username = self.username_for(identity)
        report = TeardownReport(username=username)

        with self._logger.operation(
            command,
            target={**_target(identity), "username": username},
        ) as op:
            url = self._applied_url(identity, report, op)
            self._delete_remote_user(url, username, report, op, cancel)

            for category, delete_fn in self._teardown_steps(identity.namespace):
                step = f"resources.delete.{category}"
                try:
                    removed = delete_fn()
                except ResourceRegistryError as exc:
                    LOGGER.warning("Failed to delete %s objects for %s: %s", category, username, exc)
                    report.categories.append(CategoryOutcome(category, error=str(exc)))
                    op.add_step(step, status="error", detail=str(exc))
                    continue
                report.categories.append(CategoryOutcome(category, removed=removed))
                op.add_step(step, detail={"removed": removed})

            existed = self._registry.delete(identity.namespace, MANAGED_RESOURCE_NAME)
            op.add_step("resources.delete.managedresource", detail={"existed": existed})

            message = f"Deleted tenant {identity.namespace}/{identity.name}."
            problems = report.warnings + [
                f"{item.category}: {item.error}" for item in report.categories if not item.ok
            ]
            if problems:
                op.warning(message, warnings=problems)
            else:
                op.success(message)
        return report

    def _applied_url(self, identity: TenantIdentity, report: TeardownReport, op: OperationScope) -> str:
        """Return the appliance the tenant was reconciled against."""
        fallback = self._config.synology.url
        try:
            notes = self._registry.annotations(identity.namespace, MANAGED_RESOURCE_NAME)
        except ResourceRegistryError as exc:
            LOGGER.warning("Using configured appliance for %s: %s", identity.namespace, exc)
            report.warnings.append(str(exc))
            op.add_step("resources.read", status="warning", detail=str(exc))
            return fallback
        return notes.get(APPLIANCE_URL_ANNOTATION) or fallback

    def _delete_remote_user(
        self,
        url: str,
        username: str,
        report: TeardownReport,
        op: OperationScope,
        cancel: threading.Event | None,
    ) -> None:
        _check_cancelled(cancel, "credential resolution")
        try:
            admin = resolve_admin_credentials(self._secrets, self._config.synology.secret_ref)
        except CredentialResolutionError as exc:
            LOGGER.warning("Skipping appliance user deletion for %s: %s", username, exc)
            report.warnings.append(str(exc))
            op.add_step("credentials.resolve", status="warning", detail=str(exc))
            return
        op.add_step("credentials.resolve")

        try:
            client = self._client_factory(url, admin)
        except SynologyError as exc:
            LOGGER.warning("Skipping appliance user deletion for %s: %s", username, exc)
            report.warnings.append(str(exc))
            op.add_step("session.login", status="warning", detail=str(exc))
            return

        step = "session.login"
        try:
            _check_cancelled(cancel, "login")
            client.login()
            op.add_step(step)
            step = "user.delete"
            _check_cancelled(cancel, "user deletion")
            client.delete_user(username)
            report.user_deleted = True
            op.add_step(step)
        except ReconcileCancelled:
            raise
        except SynologyError as exc:
            LOGGER.warning("Appliance step %s failed for %s: %s", step, username, exc)
            report.warnings.append(f"{step}: {exc}")
            op.add_step(step, status="warning", detail=str(exc))
        finally:
            self._release(client, op)

    def _teardown_steps(self, namespace: str) -> list[tuple[str, Callable[[], int]]]:
        return [
            (
                kind.lower(),
                partial(self._registry.delete_all_of, namespace, kind, LABEL_SELECTOR),
            )
            for kind in TEARDOWN_KINDS
        ]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _default_client(self, url: str, admin: Credentials) -> SynologyClient:
        synology = self._config.synology
        return SynologyClient(
            url,
            admin.username,
            admin.password,
            timeout=synology.request_timeout,
            verify_tls=synology.verify_tls,
        )

    @staticmethod
    def _roll_back_user(client: SynologyClient, username: str, op: OperationScope) -> None:
        try:
            client.delete_user(username)
        except SynologyError as exc:
            LOGGER.warning("Failed to roll back appliance user %s: %s", username, exc)
            op.add_step("user.rollback", status="error", detail=str(exc))
        else:
            op.add_step("user.rollback")

    @staticmethod
    def _release(client: SynologyClient, op: OperationScope) -> None:
        try:
            if client.is_authenticated:
                client.logout()
                op.add_step("session.logout")
        except SynologyError as exc:
            LOGGER.warning("Failed to log out of appliance session: %s", exc)
            op.add_step("session.logout", status="warning", detail=str(exc))
        finally:
            client.close()


def _check_cancelled(cancel: threading.Event | None, before: str) -> None:
    if cancel is not None and cancel.is_set():
        raise ReconcileCancelled(f"Cancelled before {before}.")


def _target(identity: TenantIdentity) -> dict[str, str]:
    return {"name": identity.name, "namespace": identity.namespace}


__all__ = [
    "APPLIANCE_URL_ANNOTATION",
    "Actuator",
    "CategoryOutcome",
    "DesiredState",
    "MANAGED_RESOURCE_NAME",
    "ReconcileResult",
    "TEARDOWN_KINDS",
    "TeardownReport",
]
