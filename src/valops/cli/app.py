"""
Root Typer application for valops.

Usage::

    valops up indexer --owner titan --network testnet --param network=test
    valops up validator --fleet fleet.yaml --name validator
    valops status validator --owner arch --network testnet
    valops backup validator --owner arch --network testnet
    valops down validator --owner arch --network testnet
    valops deploy-identity validator --owner arch --network testnet --key id.age
    valops render base-layer-node --fleet fleet.yaml  # print the config, touch nothing
    valops keygen                                     # create the host age keypair

Every lifecycle command exits with code 1 when the outcome is FAILED or the
operation was blocked.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from valops import __version__
from valops.core.errors import DestructiveOperationBlocked, ValidationError, ValopsError
from valops.core.logging import configure_logging
from valops.core.settings import ValopsSettings
from valops.deploy.reconciler import Reconciler
from valops.deploy.render import render_config
from valops.deploy.results import ReconcileResult, ReconcileState, ServiceStatus
from valops.deploy.specs import ServiceSpec, get_profile, load_fleet
from valops.deploy.supervisor import SystemdSupervisor
from valops.deploy.vault import AgeVault

app = typer.Typer(
    name="valops",
    help="valops: idempotent lifecycle for validator, indexer and bitcoind fleets.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
console = Console()
err_console = Console(stderr=True)


# ── Process boundary ─────────────────────────────────────────────────────


def _settings() -> ValopsSettings:
    settings = ValopsSettings()
    configure_logging(level=settings.log_level, json_format=settings.json_logs)
    return settings


def _build_reconciler(settings: ValopsSettings) -> Reconciler:
    return Reconciler(
        SystemdSupervisor(unit_dir=settings.unit_dir),
        AgeVault(),
        settings,
    )


def _parse_params(values: list[str]) -> dict[str, str]:
    params: dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"expected key=value, got {item!r}", param_hint="--param")
        params[key.strip()] = value
    return params


def _build_spec(
    kind: str,
    settings: ValopsSettings,
    owner: str | None,
    network: str | None,
    data_dir: Path | None,
    params: list[str],
    fleet: Path | None,
    name: str | None,
) -> ServiceSpec:
    profile = get_profile(kind)

    if fleet is not None:
        services = load_fleet(fleet)
        if name is not None:
            if name not in services:
                raise ValidationError(f"fleet {fleet} has no service named {name!r}", field="name")
            spec = services[name]
        else:
            matches = [s for s in services.values() if s.kind is profile.kind]
            if len(matches) != 1:
                raise ValidationError(
                    f"fleet {fleet} has {len(matches)} {profile.kind.value} services; pass --name",
                    field="name",
                )
            spec = matches[0]
        if spec.kind is not profile.kind:
            raise ValidationError(
                f"service {name!r} in {fleet} is a {spec.kind.value}, not a {profile.kind.value}",
                field="kind",
            )
        return spec

    if not owner:
        raise typer.BadParameter("--owner is required without --fleet", param_hint="--owner")
    if not network:
        raise typer.BadParameter("--network is required without --fleet", param_hint="--network")
    return ServiceSpec(
        kind=profile.kind,
        owner=owner,
        network_mode=network.lower(),
        data_directory=data_dir
        or ServiceSpec.default_data_directory(profile.kind, owner, settings.home_root),
        parameters=_parse_params(params),
    )


def _fail(exc: ValopsError) -> typer.Exit:
    err_console.print(f"[red]✗ {type(exc).__name__}: {exc.message}[/]")
    return typer.Exit(code=1)


# ── Shared options ───────────────────────────────────────────────────────

KindArg = typer.Argument(..., help="Service kind: validator, indexer or base-layer-node.")
OwnerOpt = typer.Option(None, "--owner", "-u", help="OS principal that runs the service.")
NetworkOpt = typer.Option(None, "--network", "-n", help="Network mode (testnet, mainnet, ...).")
DataDirOpt = typer.Option(None, "--data-dir", help="Data directory (default: ~owner/data/<kind>).")
ParamOpt = typer.Option([], "--param", "-p", help="Kind parameter as key=value. Repeatable.")
FleetOpt = typer.Option(None, "--fleet", "-f", help="YAML fleet file declaring services.")
NameOpt = typer.Option(None, "--name", help="Service name inside the fleet file.")
JsonOpt = typer.Option(False, "--json", help="Output the result as JSON.")


# ── Commands ─────────────────────────────────────────────────────────────


@app.callback(invoke_without_command=True)
def main(
    version: bool = typer.Option(False, "--version", "-V", help="Show version and exit."),
) -> None:
    """valops: declare, ensure, start and verify node services."""
    if version:
        typer.echo(f"valops {__version__}")
        raise typer.Exit()


@app.command("up")
def up(
    kind: str = KindArg,
    owner: str | None = OwnerOpt,
    network: str | None = NetworkOpt,
    data_dir: Path | None = DataDirOpt,
    param: list[str] = ParamOpt,
    fleet: Path | None = FleetOpt,
    name: str | None = NameOpt,
    json_out: bool = JsonOpt,
) -> None:
    """Reconcile a service to READY (idempotent)."""
    settings = _settings()
    try:
        spec = _build_spec(kind, settings, owner, network, data_dir, param, fleet, name)
    except ValopsError as exc:
        raise _fail(exc) from exc

    console.print(f"[bold green]▲ up[/] {spec.identity} ({spec.network_mode.value})")
    result = _build_reconciler(settings).ensure(spec)

    if json_out:
        typer.echo(result.model_dump_json(indent=2))
    else:
        _print_reconcile_result(result)
    if result.state is not ReconcileState.READY:
        raise typer.Exit(code=1)


@app.command("down")
def down(
    kind: str = KindArg,
    owner: str | None = OwnerOpt,
    network: str | None = NetworkOpt,
    data_dir: Path | None = DataDirOpt,
    fleet: Path | None = FleetOpt,
    name: str | None = NameOpt,
    json_out: bool = JsonOpt,
) -> None:
    """Tear a service down, only after its secrets are backed up."""
    settings = _settings()
    try:
        spec = _build_spec(kind, settings, owner, network, data_dir, [], fleet, name)
        console.print(f"[bold red]▼ down[/] {spec.identity}")
        result = _build_reconciler(settings).teardown(spec)
    except DestructiveOperationBlocked as exc:
        err_console.print("[red bold]Teardown blocked; nothing was changed.[/]")
        raise _fail(exc) from exc
    except ValopsError as exc:
        raise _fail(exc) from exc

    if json_out:
        typer.echo(result.model_dump_json(indent=2))
        return
    for record in result.backup.records:
        console.print(f"  backup {record.logical_id}: {record.backup_path}")
    for step in result.steps:
        mark = "[green]changed[/]" if step.changed else "[dim]unchanged[/]"
        console.print(f"  {step.name:<10} {mark}")
    console.print(f"[green]✓ {spec.identity} removed ({len(result.erased)} secrets erased)[/]")


@app.command("backup")
def backup(
    kind: str = KindArg,
    owner: str | None = OwnerOpt,
    network: str | None = NetworkOpt,
    data_dir: Path | None = DataDirOpt,
    fleet: Path | None = FleetOpt,
    name: str | None = NameOpt,
    json_out: bool = JsonOpt,
) -> None:
    """Create encrypted backups of every identity secret (never overwrites)."""
    settings = _settings()
    try:
        spec = _build_spec(kind, settings, owner, network, data_dir, [], fleet, name)
        report = _build_reconciler(settings).backup(spec)
    except ValopsError as exc:
        raise _fail(exc) from exc

    if json_out:
        typer.echo(report.model_dump_json(indent=2))
        return
    if not report.records:
        console.print(f"[dim]No secret material found for {spec.identity}.[/]")
        return
    table = Table(title=f"Backups for {spec.identity}")
    table.add_column("Logical ID", style="bold")
    table.add_column("Network")
    table.add_column("Backup")
    table.add_column("Action")
    for record in report.records:
        action = "[green]created[/]" if record.created else "[dim]existing[/]"
        table.add_row(record.logical_id, record.network_mode or "-", record.backup_path, action)
    console.print(table)


@app.command("status")
def status(
    kind: str = KindArg,
    owner: str | None = OwnerOpt,
    network: str | None = NetworkOpt,
    data_dir: Path | None = DataDirOpt,
    param: list[str] = ParamOpt,
    fleet: Path | None = FleetOpt,
    name: str | None = NameOpt,
    json_out: bool = JsonOpt,
) -> None:
    """Show a read-only snapshot of a service."""
    settings = _settings()
    try:
        spec = _build_spec(kind, settings, owner, network, data_dir, param, fleet, name)
        snapshot = _build_reconciler(settings).status(spec)
    except ValopsError as exc:
        raise _fail(exc) from exc

    if json_out:
        typer.echo(snapshot.model_dump_json(indent=2))
    else:
        _print_status(snapshot)


@app.command("render")
def render(
    kind: str = KindArg,
    owner: str | None = OwnerOpt,
    network: str | None = NetworkOpt,
    data_dir: Path | None = DataDirOpt,
    param: list[str] = ParamOpt,
    fleet: Path | None = FleetOpt,
    name: str | None = NameOpt,
) -> None:
    """Print the rendered config for a service without touching the host."""
    settings = ValopsSettings()
    try:
        spec = _build_spec(kind, settings, owner, network, data_dir, param, fleet, name)
        spec.validate()
    except ValopsError as exc:
        raise _fail(exc) from exc
    rendered = render_config(spec, settings.home_root)
    typer.echo(rendered.text, nl=False)


@app.command("deploy-identity")
def deploy_identity(
    kind: str = KindArg,
    key: Path = typer.Option(..., "--key", "-k", help="age-encrypted identity key file."),
    owner: str | None = OwnerOpt,
    network: str | None = NetworkOpt,
    data_dir: Path | None = DataDirOpt,
    fleet: Path | None = FleetOpt,
    name: str | None = NameOpt,
    json_out: bool = JsonOpt,
) -> None:
    """Decrypt an identity key and install it for the service principal."""
    settings = _settings()
    try:
        spec = _build_spec(kind, settings, owner, network, data_dir, [], fleet, name)
        deployment = _build_reconciler(settings).deploy_identity(spec, key)
    except ValopsError as exc:
        raise _fail(exc) from exc

    if json_out:
        typer.echo(deployment.model_dump_json(indent=2))
        return
    verb = "deployed" if deployment.changed else "already installed"
    console.print(f"[green]✓ Identity {verb}[/]")
    console.print(f"  network:    {deployment.network_mode}")
    console.print(f"  logical id: {deployment.logical_id}")
    console.print(f"  location:   {deployment.path}")


@app.command("keygen")
def keygen(
    directory: Path | None = typer.Option(
        None, "--dir", help="Key directory (default: VALOPS_BACKUP_ROOT)."
    ),
) -> None:
    """Create the host age keypair used for identity backups (idempotent)."""
    settings = _settings()
    try:
        key_path, pub_path = AgeVault().generate_host_keypair(directory or settings.backup_root)
    except ValopsError as exc:
        raise _fail(exc) from exc
    console.print(f"[green]✓ Host identity key:[/] {key_path}")
    console.print(f"  recipient: {pub_path.read_text(encoding='utf-8').strip()}")
    console.print("[dim]Back up the entire directory; it holds host keys and identity backups.[/]")


# ── Output helpers ───────────────────────────────────────────────────────


_STATE_STYLE = {
    ReconcileState.READY: "green bold",
    ReconcileState.FAILED: "red bold",
}


def _print_reconcile_result(result: ReconcileResult) -> None:
    """Pretty-print a ReconcileResult."""
    table = Table(title=f"{result.service}")
    table.add_column("Step", style="bold")
    table.add_column("Changed")
    table.add_column("Detail", style="dim")
    for step in result.steps:
        table.add_row(step.name, "[yellow]yes[/]" if step.changed else "no", step.detail)
    console.print(table)

    style = _STATE_STYLE.get(result.state, "yellow")
    path = " → ".join(s.value for s in result.transitions)
    console.print(f"[{style}]{result.state.value.upper()}[/] ({path}) in {result.duration_seconds:.1f}s")
    if result.probe_detail:
        console.print(f"  probe: {result.probe_detail}")
    if result.backup:
        for record in result.backup.records:
            action = "created" if record.created else "existing"
            console.print(f"  backup {record.logical_id}: {action}")
    if result.error:
        err_console.print(f"[red]✗ {result.error_type}: {result.error.get('message')}[/]")
        if result.error_type == "HealthCheckTimeout":
            err_console.print("[dim]  The process was left running; check its logs and 'valops status'.[/]")


def _print_status(snapshot: ServiceStatus) -> None:
    def _flag(value: bool) -> str:
        return "[green]yes[/]" if value else "[red]no[/]"

    table = Table(title=f"Status: {snapshot.service}")
    table.add_column("Check", style="bold")
    table.add_column("Value")
    table.add_row("principal", _flag(snapshot.principal_exists))
    table.add_row("unit installed", _flag(snapshot.unit_installed))
    table.add_row("running", f"{_flag(snapshot.running)} ({snapshot.supervisor_state})")
    table.add_row("config in sync", _flag(snapshot.config_in_sync))
    for secret in snapshot.secrets:
        when = f" ({secret.backed_up_at})" if secret.backed_up_at else ""
        table.add_row(f"secret {secret.logical_id}", f"backed up: {_flag(secret.backed_up)}{when}")
    console.print(table)
