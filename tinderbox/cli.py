"""Thin CLI wrapper for tinderbox.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import dataclasses
import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import typer
from rich.console import Console
from rich.table import Table

from tinderbox import __version__
from tinderbox.config import get_settings, print_settings_json

if TYPE_CHECKING:
    from tinderbox.provision.service import Provisioner

app = typer.Typer(
    name="tinderbox",
    help="Tinderbox - provision Jetson edge modules from installer media",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"tinderbox version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Override the configured log level"),
    ] = None,
) -> None:
    """Tinderbox - provision Jetson edge modules from installer media."""
    level = (log_level or get_settings().log_level).upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings))
    else:
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Defaults:[/bold]")
        console.print(f"  OS NVMe slot:        {settings.os_nvme_default}")
        console.print(f"  Default user:        {settings.default_user}")
        console.print(f"  Hostname:            {settings.hostname}")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Log directory:       {settings.log_dir}")
        console.print(f"  Staging root:        {settings.staging_root}")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print(f"  Log level:           {settings.log_level}")
        console.print()
        console.print("[bold]Flashing:[/bold]")
        console.print(f"  Board:               {settings.board}")
        console.print(f"  Transport interface: {settings.transport_interface}")
        console.print(f"  Target address:      {settings.target_address}")
        console.print(f"  Always stage:        {settings.always_stage}")
        console.print()
        console.print("[bold]Watchdog:[/bold]")
        console.print(f"  Poll interval (s):   {settings.watchdog_poll_interval}")
        console.print(f"  Grace polls:         {settings.watchdog_grace_polls}")
        console.print()
        console.print("[bold]First boot:[/bold]")
        console.print(f"  Marker:              {settings.firstboot_marker}")
        console.print(f"  Data mount point:    {settings.data_mount_point}")
        console.print(f"  Data label:          {settings.data_label}")


devices_app = typer.Typer(help="Inspect storage and recovery-mode devices")
app.add_typer(devices_app, name="devices")


@devices_app.command("list")
def devices_list(
    show_all: Annotated[
        bool,
        typer.Option("--all", "-a", help="Include boot and internal disks"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List storage devices and their role relative to the root disk.

    By default only removable/USB candidates are shown. The disk backing
    '/' is never a candidate.
    """
    from tinderbox.devices.enumerate import (
        candidate_devices,
        enumerate_devices,
        resolve_root_disk,
    )
    from tinderbox.devices.selection import format_size

    root_disk = resolve_root_disk()
    devices = enumerate_devices(root_disk)
    if not show_all:
        devices = candidate_devices(devices)

    if json_output:
        output = {
            "root_disk": root_disk,
            "devices": [
                {
                    "path": d.path,
                    "transport": d.transport.value,
                    "removable": d.removable,
                    "role": d.role.value,
                    "size_bytes": d.size_bytes,
                    "model": d.model,
                    "serial": d.serial,
                    "partitions": [dataclasses.asdict(p) for p in d.partitions],
                }
                for d in devices
            ],
        }
        console.print(json.dumps(output, indent=2))
        return

    console.print(f"Root disk: [bold]{root_disk or 'unknown'}[/bold]")
    if not devices:
        console.print("[yellow]No devices found[/yellow]")
        return

    table = Table()
    table.add_column("Device", style="cyan")
    table.add_column("Role")
    table.add_column("Tran")
    table.add_column("RM")
    table.add_column("Size", justify="right")
    table.add_column("Model")
    table.add_column("Serial")
    table.add_column("Labels")
    for d in devices:
        labels = ", ".join(p.label for p in d.partitions if p.label)
        table.add_row(
            d.path,
            d.role.value,
            d.transport.value,
            "1" if d.removable else "0",
            format_size(d.size_bytes),
            d.model or "",
            d.serial or "",
            labels,
        )
    console.print(table)


@devices_app.command("identity")
def devices_identity(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Check for exactly one supported module in recovery mode."""
    from tinderbox.devices.identity import (
        IdentityGateError,
        check_bus_identity,
        list_bus_ids,
    )

    observed = list_bus_ids()
    try:
        variant = check_bus_identity(observed)
    except IdentityGateError as e:
        if json_output:
            output = {
                "passed": False,
                "observed": [str(b) for b in observed],
                "error_code": e.error_code,
                "message": e.message,
            }
            console.print(json.dumps(output, indent=2))
        else:
            console.print(f"[red]✗ {e.message}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        output = {
            "passed": True,
            "observed": [str(b) for b in observed],
            "variant": variant.value,
            "label": variant.label,
        }
        console.print(json.dumps(output, indent=2))
    else:
        console.print(f"[green]✓ Detected: {variant.label}[/green]")


@app.command("select-media")
def select_media_cmd(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output the confirmed selection as JSON"),
    ] = False,
) -> None:
    """Choose a removable disk to erase (installer media).

    Lists USB/removable disks, re-validates the choice, asks for SELECT and
    then YES. Nothing is written; the confirmed disk is printed.
    """
    from tinderbox.devices.enumerate import resolve_root_disk
    from tinderbox.devices.selection import (
        SelectionCancelled,
        confirm_danger,
        select_media,
    )

    root_disk = resolve_root_disk()
    try:
        result = select_media(root_disk=root_disk, console=console)
        confirm_danger(result.alias, console=console)
    except SelectionCancelled:
        console.print("[yellow]Aborted[/yellow]")
        raise typer.Exit(code=0) from None

    if json_output:
        console.print(json.dumps(dataclasses.asdict(result), indent=2))
    else:
        console.print(f"[green]✓ Confirmed target: {result.device_path}[/green]")
        console.print(f"  Alias: {result.alias}")


@app.command()
def flash(
    source_dir: Annotated[
        Path,
        typer.Argument(help="Directory containing Linux_for_Tegra (default: current)"),
    ] = Path("."),
    no_record: Annotated[
        bool,
        typer.Option("--no-record", help="Do not record the run in the database"),
    ] = False,
) -> None:
    """Flash a Jetson module over USB recovery mode.

    Runs preflight, quiesces the host, stages the toolkit, waits for exactly
    one supported module, asks for the OS slot and the YES gate, then runs
    the flash tool under the link watchdog. Host state is restored on exit.
    """
    from tinderbox.db import get_session, open_history
    from tinderbox.provision.service import Provisioner

    source_dir = source_dir.resolve()
    settings = get_settings(source_dir)

    if no_record:
        exit_code = _run_flash(Provisioner(settings, console=console), source_dir)
    else:
        with get_session(open_history(settings.db_url)) as session:
            provisioner = Provisioner(settings, console=console, session=session)
            exit_code = _run_flash(provisioner, source_dir)

    if exit_code:
        raise typer.Exit(code=exit_code)


def _run_flash(provisioner: "Provisioner", source_dir: Path) -> int:
    """Run one flash and report it. Returns the process exit status."""
    from tinderbox.devices.identity import IdentityGateError
    from tinderbox.devices.selection import SelectionCancelled
    from tinderbox.provision.errors import ProvisioningError
    from tinderbox.types import RunStatus

    try:
        run = provisioner.run(source_dir)
    except SelectionCancelled:
        console.print("[yellow]Aborted[/yellow]")
        return 0
    except (ProvisioningError, IdentityGateError) as e:
        err_console.print(f"[red]Error: {e.message}[/red]")
        return 1

    if run.outcome is RunStatus.SUCCEEDED:
        console.print("[green]✓ Flash complete[/green]")
        if run.slots:
            for slot, role in run.slots.roles.items():
                console.print(f"  {role.value.upper():<5} {slot}")
            console.print("  DATA is initialized on first boot")
        console.print(f"  Log:  {run.log_path}")
        return 0

    if run.outcome is RunStatus.WATCHDOG_ABORT:
        err_console.print(f"[red]{run.abort_reason}[/red]")
    else:
        err_console.print(f"[red]✗ Flash failed (exit {run.tool_exit_code})[/red]")
    if run.diagnostics:
        err_console.print(run.diagnostics, markup=False, highlight=False)
    err_console.print(f"Log: {run.log_path}")
    if run.diagnostics_path:
        err_console.print(f"Diagnostics: {run.diagnostics_path}")
    return run.exit_code or 1


runs_app = typer.Typer(help="Provisioning run history")
app.add_typer(runs_app, name="runs")


@runs_app.command("list")
def runs_list(
    status: Annotated[
        str | None,
        typer.Option(
            "--status",
            "-s",
            help="Filter by status (pending/running/succeeded/failed/watchdog_abort)",
        ),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 100,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List provisioning runs, newest first."""
    from tinderbox.db import open_history
    from tinderbox.provision.service import get_provisioning_records
    from tinderbox.types import RunStatus

    status_filter: RunStatus | None = None
    if status:
        try:
            status_filter = RunStatus(status)
        except ValueError:
            console.print(f"[red]Invalid status: {status}[/red]")
            console.print(
                "Valid values: " + ", ".join(s.value for s in RunStatus)
            )
            raise typer.Exit(code=1) from None

    factory = open_history()
    with factory() as session:
        records = get_provisioning_records(session, status=status_filter, limit=limit)

        if not records:
            if json_output:
                console.print("[]")
            else:
                console.print("[yellow]No provisioning runs found[/yellow]")
            return

        if json_output:
            output = [
                {
                    "id": r.id,
                    "variant": r.variant,
                    "os_device": r.os_device,
                    "data_device": r.data_device,
                    "status": r.status,
                    "tool_exit_code": r.tool_exit_code,
                    "started_at": r.started_at.isoformat() if r.started_at else None,
                    "finished_at": r.finished_at.isoformat() if r.finished_at else None,
                    "log_path": r.log_path,
                    "diagnostics_path": r.diagnostics_path,
                    "error_type": r.error_type,
                    "error_message": r.error_message,
                }
                for r in records
            ]
            console.print(json.dumps(output, indent=2))
        else:
            console.print(f"[bold]Found {len(records)} run(s):[/bold]")
            console.print()
            for r in records:
                status_color = {
                    "succeeded": "green",
                    "failed": "red",
                    "watchdog_abort": "magenta",
                    "running": "blue",
                    "pending": "yellow",
                }.get(r.status, "white")
                console.print(f"  [{status_color}]Run #{r.id}[/{status_color}]")
                console.print(f"    Variant: {r.variant or 'N/A'}")
                console.print(f"    OS/DATA: {r.os_device or '?'} / {r.data_device or '?'}")
                console.print(f"    Status: {r.status}")
                console.print(
                    f"    Started: {r.started_at.isoformat() if r.started_at else 'N/A'}"
                )
                if r.error_message:
                    console.print(f"    Error: {r.error_message}")
                console.print()


@app.command()
def firstboot(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Initialize the data volume on first boot (runs on the module).

    Exits 42-48 on the corresponding failure; re-running after success is
    a no-op.
    """
    from tinderbox.firstboot.service import FirstBootError, FirstBootInitializer

    try:
        record = FirstBootInitializer(get_settings()).run()
    except FirstBootError as e:
        err_console.print(f"[red]ERROR: {e.message}[/red]")
        raise typer.Exit(code=e.exit_code) from None

    if json_output:
        output = dataclasses.asdict(record) if record else {"already_done": True}
        console.print(json.dumps(output, indent=2))
    elif record is None:
        console.print("First boot already completed; nothing to do.")
    else:
        action = "formatted" if record.formatted else "kept existing filesystem on"
        console.print(f"[green]✓ Data volume ready[/green] ({action} {record.partition})")
        console.print(f"  UUID:  {record.fs_uuid}")
        console.print(f"  Mount: {record.mount_point}")


if __name__ == "__main__":
    app()
