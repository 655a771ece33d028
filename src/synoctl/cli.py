"""Typer-powered command line surface for ``synoctl``.

Each command loads the layered configuration once, wires an
:class:`~synoctl.actuator.Actuator` to file-backed collaborators, and maps
failures onto the exit codes in :mod:`synoctl.exit_codes`.
"""
from __future__ import annotations

import json
import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .actuator import Actuator, DesiredState, TeardownReport
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode, exit_code_for
from .logging import StructuredLogger
from .providerconfig import ProviderConfigDecoder, ProviderConfigError
from .secrets import FileSecretStore
from .state.registry import ResourceRegistry, ResourceRegistryError
from .synology.credentials import TenantIdentity
from .synology.errors import SynologyError
from .synology.manifests import ManifestBuilder
from .templates import TemplateEngine

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to synoctl's YAML config file.",
)
PROVIDER_CONFIG_OPTION = typer.Option(
    None,
    "--provider-config",
    exists=True,
    dir_okay=False,
    help="JSON or YAML ShootConfiguration supplied by the tenant.",
)
NAME_ARGUMENT = typer.Argument(..., help="Tenant name.")
NAMESPACE_ARGUMENT = typer.Argument(..., help="Tenant control namespace.")

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Synology CSI tenant credential manager.

        Provisions one DSM user per tenant, renders the CSI driver object set
        with that user's credentials, and tears both down again.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Objects shared by every command of one invocation."""

    config: AppConfig
    logger: StructuredLogger
    decoder: ProviderConfigDecoder
    actuator: Actuator


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    logger = StructuredLogger(config.logs_dir)
    decoder = ProviderConfigDecoder()
    actuator = Actuator(
        config,
        secrets=FileSecretStore(config.secrets_dir),
        registry=ResourceRegistry(config.registry_dir),
        builder=ManifestBuilder(TemplateEngine.with_overrides(config.templates_dir)),
        logger=logger,
        decoder=decoder,
    )
    runtime = RuntimeContext(config=config, logger=logger, decoder=decoder, actuator=actuator)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the synoctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"synoctl {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _fail(exc: Exception) -> NoReturn:
    code = exit_code_for(exc)
    console.print(f"[red]Error:[/red] {exc}")
    raise typer.Exit(code=code) from exc


def _identity(name: str, namespace: str) -> TenantIdentity:
    try:
        return TenantIdentity(name=name, namespace=namespace)
    except ValueError as exc:
        _fail(exc)


def _require_actuator_config(runtime: RuntimeContext, *, url_optional: bool = False) -> None:
    problems = runtime.config.validate_for_actuator()
    if url_optional:
        problems = [problem for problem in problems if not problem.startswith("synology.url")]
    if problems:
        for problem in problems:
            console.print(f"[red]Configuration error:[/red] {problem}")
        raise typer.Exit(code=ExitCode.VALIDATION)


def _sets_tenant_url(runtime: RuntimeContext, state: DesiredState) -> bool:
    if state.provider_config is None:
        return False
    try:
        tenant = runtime.decoder.decode(state.provider_config)
    except ProviderConfigError as exc:
        _fail(exc)
    return tenant.synology_url is not None


def _read_provider_config(path: Path | None) -> str | None:
    if path is None:
        return None
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        console.print(f"[red]Error:[/red] Failed to read {path}: {exc}")
        raise typer.Exit(code=ExitCode.ENVIRONMENT) from exc


def _converge(
    ctx: typer.Context,
    name: str,
    namespace: str,
    provider_config: Path | None,
    *,
    restore: bool,
) -> None:
    runtime = _get_runtime(ctx)
    state = DesiredState(
        identity=_identity(name, namespace),
        provider_config=_read_provider_config(provider_config),
    )
    _require_actuator_config(runtime, url_optional=_sets_tenant_url(runtime, state))
    try:
        if restore:
            result = runtime.actuator.restore(state)
        else:
            result = runtime.actuator.reconcile(state)
    except (SynologyError, ProviderConfigError, ResourceRegistryError) as exc:
        _fail(exc)

    action = "Created" if result.user_created else "Recovered"
    console.print(f"{action} DSM user [bold]{result.username}[/bold].")
    state_word = "applied" if result.changed else "unchanged"
    console.print(f"{result.object_count} objects {state_word}.")
    for warning in result.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")


def _teardown(ctx: typer.Context, name: str, namespace: str, *, force: bool) -> None:
    runtime = _get_runtime(ctx)
    identity = _identity(name, namespace)
    try:
        if force:
            report = runtime.actuator.force_delete(identity)
        else:
            report = runtime.actuator.delete(identity)
    except (SynologyError, ResourceRegistryError) as exc:
        _fail(exc)
    _render_report(report)


def _render_report(report: TeardownReport) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Category", style="bold")
    table.add_column("Removed")
    table.add_column("Status")
    for outcome in report.categories:
        status = "ok" if outcome.ok else f"[red]{outcome.error}[/red]"
        table.add_row(outcome.category, str(outcome.removed), status)
    console.print(table)

    user_status = "deleted" if report.user_deleted else "not deleted"
    console.print(f"DSM user [bold]{report.username}[/bold] {user_status}.")
    for warning in report.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")


@app.command()
def reconcile(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    namespace: str = NAMESPACE_ARGUMENT,
    provider_config: Path | None = PROVIDER_CONFIG_OPTION,
) -> None:
    """Create or recover the tenant's DSM user and apply its objects."""
    _converge(ctx, name, namespace, provider_config, restore=False)


@app.command()
def restore(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    namespace: str = NAMESPACE_ARGUMENT,
    provider_config: Path | None = PROVIDER_CONFIG_OPTION,
) -> None:
    """Converge a tenant after a control-plane move."""
    _converge(ctx, name, namespace, provider_config, restore=True)


@app.command()
def delete(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    namespace: str = NAMESPACE_ARGUMENT,
) -> None:
    """Delete the tenant's DSM user and every declared object."""
    _teardown(ctx, name, namespace, force=False)


@app.command("force-delete")
def force_delete(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    namespace: str = NAMESPACE_ARGUMENT,
) -> None:
    """Tear the tenant down regardless of appliance availability."""
    _teardown(ctx, name, namespace, force=True)


@app.command()
def migrate(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    namespace: str = NAMESPACE_ARGUMENT,
) -> None:
    """Hand the tenant over; the appliance is left untouched."""
    runtime = _get_runtime(ctx)
    runtime.actuator.migrate(DesiredState(identity=_identity(name, namespace)))
    console.print("Nothing to migrate.")


@app.command()
def username(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    namespace: str = NAMESPACE_ARGUMENT,
) -> None:
    """Print the DSM username derived for a tenant."""
    runtime = _get_runtime(ctx)
    console.print(runtime.actuator.username_for(_identity(name, namespace)))


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


@config_app.command("validate")
def config_validate(ctx: typer.Context) -> None:
    """Check that the configuration is complete enough to reconcile tenants."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("config validate", target={"kind": "config"}) as op:
        problems = runtime.config.validate_for_actuator()
        if problems:
            for problem in problems:
                console.print(f"[red]Configuration error:[/red] {problem}")
            op.error("Configuration is incomplete.", errors=problems, rc=ExitCode.VALIDATION)
            raise typer.Exit(code=ExitCode.VALIDATION)
        console.print("[green]Configuration OK.[/green]")
        op.success("Configuration is valid.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()
