"""avdpool command line interface.

Commands:
    ensure-capacity       Run one capacity reconciliation pass for a pool
    rebuild-reservations  Rebuild the reservation set of a pool
    notify                Report a workload lifecycle event
    plan                  Preview the target host count for a reservation count
    status                Show the classified session hosts of a pool
    config show|init      Inspect or create the configuration file
"""

import logging
import sys
from pathlib import Path
from typing import NoReturn

import click
import tomlkit
from rich.console import Console
from rich.table import Table

from avdpool import __version__
from avdpool.azure_compute import AzureCliComputeProvider
from avdpool.azure_session_directory import AzureCliSessionDirectory
from avdpool.capacity_planner import CapacityPlanner, ScalingConfig
from avdpool.capacity_reconciler import CapacityReconcileError, CapacityReconciler
from avdpool.click_group import AvdPoolGroup
from avdpool.config_manager import ConfigError, ConfigManager, OrchestratorConfig
from avdpool.host_classifier import HostClassifier
from avdpool.providers import ProviderError
from avdpool.reservation_rebuilder import ReservationRebuildError
from avdpool.workload_events import SlotProvisioningError, WorkloadEvent, WorkloadEventHandler

logger = logging.getLogger(__name__)
console = Console()

HANDLED_ERRORS = (
    CapacityReconcileError,
    ReservationRebuildError,
    SlotProvisioningError,
    ConfigError,
    ProviderError,
)


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _load_config(ctx: click.Context) -> OrchestratorConfig:
    config = ConfigManager.load_config(ctx.obj.get("config_path"))
    if not config.resource_group:
        raise ConfigError("resource_group is not configured. Run: avdpool config init --rg <name>")
    return config


def build_reconciler(config: OrchestratorConfig) -> CapacityReconciler:
    """Wire a reconciler to the Azure CLI adapters."""
    compute = AzureCliComputeProvider.from_config(config)
    directory = AzureCliSessionDirectory.from_config(config)
    return CapacityReconciler(compute, directory, config)


def _fail(message: str) -> NoReturn:
    console.print(f"[red]Error: {message}[/red]")
    sys.exit(1)


@click.group(cls=AvdPoolGroup)
@click.option("--config", "config_path", help="Config file path", type=click.Path())
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.version_option(version=__version__, prog_name="avdpool")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, verbose: bool):
    """Keep pooled Azure Virtual Desktop host pools sized to demand.

    \b
    Examples:
        # Reconcile a pool once
        $ avdpool ensure-capacity --pool HP-Pooled-dev

        # Preview the target for 9 reservations
        $ avdpool plan --reservations 9

        # Show session hosts by classification
        $ avdpool status --pool HP-Pooled-dev
    """
    _setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@cli.command(name="ensure-capacity")
@click.option("--pool", required=True, help="Host pool name")
@click.pass_context
def ensure_capacity(ctx: click.Context, pool: str):
    """Run one capacity reconciliation pass for a pool.

    \b
    Examples:
      $ avdpool ensure-capacity --pool HP-Pooled-dev
    """
    try:
        reconciler = build_reconciler(_load_config(ctx))
        result = reconciler.ensure_capacity(pool)
    except HANDLED_ERRORS as e:
        _fail(str(e))

    color = "green" if result.converged else "yellow"
    console.print(f"\n[{color}]Pool {pool}: {result.up_count}/{result.target} hosts up[/{color}]")
    console.print(f"  Reservations:     {result.reservations}")
    console.print(f"  Resumed:          {len(result.resumed)}")
    console.print(f"  Created:          {len(result.created)}")
    console.print(f"  Failed:           {len(result.failed_resumes) + result.failed_creations}")
    console.print(f"  Stale deleted:    {len(result.stale_purged)}")
    console.print(f"  Surplus deleted:  {len(result.surplus_purged)}")
    console.print(f"  Orphans deleted:  {len(result.orphans_deleted)}")
    if result.kept_powered_off:
        console.print(f"  Kept powered off: {len(result.kept_powered_off)}")


@cli.command(name="rebuild-reservations")
@click.option("--pool", required=True, help="Host pool name")
@click.pass_context
def rebuild_reservations(ctx: click.Context, pool: str):
    """Rebuild the reservation set of a pool from its application groups.

    Invalid application groups are deleted as a side effect.
    """
    try:
        reconciler = build_reconciler(_load_config(ctx))
        reservations = reconciler.rebuild_reservations(pool)
    except HANDLED_ERRORS as e:
        _fail(str(e))

    console.print(f"\n[green]✓[/green] {len(reservations)} reservations in pool {pool}")
    for workload_id in sorted(reservations):
        console.print(f"  {workload_id}")


@cli.command(name="notify")
@click.argument("event", type=click.Choice([e.value for e in WorkloadEvent]))
@click.option("--pool", required=True, help="Host pool name")
@click.option("--workload-id", required=True, help="Workload (VM) identifier")
@click.option("--user-id", help="Object ID of the user to assign the workload slot to")
@click.pass_context
def notify(ctx: click.Context, event: str, pool: str, workload_id: str, user_id: str | None):
    """Report a workload lifecycle event and reconcile the pool.

    \b
    Examples:
      $ avdpool notify started --pool HP-Pooled-dev --workload-id uvm-0123456789
      $ avdpool notify created --pool HP-Pooled-dev --workload-id uvm-01 --user-id <object-id>
      $ avdpool notify deleted --pool HP-Pooled-dev --workload-id uvm-0123456789
    """
    try:
        handler = WorkloadEventHandler(build_reconciler(_load_config(ctx)))
        result = handler.handle(event, pool, workload_id, user_id=user_id)
    except HANDLED_ERRORS as e:
        _fail(str(e))

    console.print(f"Workload {workload_id} {event}: {result.summary()}")


@cli.command(name="plan")
@click.option("--reservations", type=int, required=True, help="Reservation count")
@click.option("--current", type=int, default=0, help="Hosts currently up (default: 0)")
@click.option("--max-sessions", type=int, help="Override max sessions per host")
@click.option("--min-hosts", type=int, help="Override minimum hosts")
@click.option("--max-hosts", type=int, help="Override maximum hosts")
@click.pass_context
def plan(
    ctx: click.Context,
    reservations: int,
    current: int,
    max_sessions: int | None,
    min_hosts: int | None,
    max_hosts: int | None,
):
    """Preview the target host count for a reservation count.

    Uses the configured scaling bounds unless overridden. Touches nothing.

    \b
    Examples:
      $ avdpool plan --reservations 9
      $ avdpool plan --reservations 39 --max-sessions 4 --max-hosts 10
    """
    try:
        scaling = ConfigManager.load_config(ctx.obj.get("config_path")).scaling
        scaling = ScalingConfig(
            max_sessions_per_host=(
                scaling.max_sessions_per_host if max_sessions is None else max_sessions
            ),
            min_hosts=scaling.min_hosts if min_hosts is None else min_hosts,
            max_hosts=scaling.max_hosts if max_hosts is None else max_hosts,
            delete_on_scale_down=scaling.delete_on_scale_down,
        )
        capacity_plan = CapacityPlanner.plan(reservations, current, scaling)
    except (ConfigError, ValueError) as e:
        _fail(str(e))

    console.print(f"Target hosts: [bold]{capacity_plan.target_host_count}[/bold]")
    console.print(f"Action:       {capacity_plan.action}")
    console.print(f"Reason:       {capacity_plan.reason}")


@cli.command(name="status")
@click.option("--pool", required=True, help="Host pool name")
@click.pass_context
def status(ctx: click.Context, pool: str):
    """Show the session hosts of a pool and how a pass would classify them."""
    try:
        config = _load_config(ctx)
        compute = AzureCliComputeProvider.from_config(config)
        directory = AzureCliSessionDirectory.from_config(config)
        hosts = directory.list_hosts(pool)
        classification = HostClassifier(compute, directory).classify(hosts)
    except HANDLED_ERRORS as e:
        _fail(str(e))

    table = Table(title=f"Session Hosts: {pool}", show_header=True, header_style="bold")
    table.add_column("Host", style="cyan")
    table.add_column("Status")
    table.add_column("Sessions", justify="right")
    table.add_column("Classification")

    buckets = [
        ("up", "green", classification.up),
        ("resumable", "yellow", classification.resumable),
        ("stale", "red", classification.to_delete),
    ]
    for label, style, bucket in buckets:
        for host in bucket:
            table.add_row(
                host.name,
                host.status or "-",
                str(host.sessions),
                f"[{style}]{label}[/{style}]",
            )

    console.print(table)
    console.print(f"[dim]{classification.summary()}[/dim]")


@cli.group(name="config")
def config_group():
    """Inspect or create the avdpool configuration file."""
    pass


@config_group.command(name="show")
@click.pass_context
def config_show(ctx: click.Context):
    """Print the effective configuration as TOML."""
    try:
        config = ConfigManager.load_config(ctx.obj.get("config_path"))
    except ConfigError as e:
        _fail(str(e))

    console.print(tomlkit.dumps(config.to_dict()), markup=False, highlight=False)


@config_group.command(name="init")
@click.option("--resource-group", "--rg", help="Azure resource group of the session hosts")
@click.option("--location", help="Azure region for new session hosts")
@click.option("--force", is_flag=True, help="Overwrite an existing configuration file")
@click.pass_context
def config_init(ctx: click.Context, resource_group: str | None, location: str | None, force: bool):
    """Write a configuration file with default settings.

    \b
    Examples:
      $ avdpool config init --rg avd-dev --location eastus
    """
    custom_path = ctx.obj.get("config_path")
    try:
        if custom_path:
            target = ConfigManager._validate_config_path(Path(custom_path).expanduser())
        else:
            target = ConfigManager.DEFAULT_CONFIG_FILE

        if target.exists() and not force:
            _fail(f"Config file already exists: {target} (use --force to overwrite)")

        config = OrchestratorConfig(resource_group=resource_group)
        if location:
            config.location = location
        path = ConfigManager.save_config(config, custom_path)
    except ConfigError as e:
        _fail(str(e))

    console.print(f"[green]✓[/green] Configuration written to {path}")


def main():
    """Console script entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
