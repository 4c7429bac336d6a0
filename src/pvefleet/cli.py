#!/usr/bin/env python3
"""
Command-line interface for declarative Proxmox VM provisioning.

    pvefleet apply  -f proxmox/vms.yml [--dry-run]
    pvefleet delete -f proxmox/vms.yml [--dry-run]
    pvefleet validate -f proxmox/vms.yml

Connection and defaults come from the environment (see pvefleet.config).
"""

import logging
import signal
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from pvefleet.config import ProvisionConfig
from pvefleet.inventory import load_inventory
from pvefleet.models import (
    BatchReport,
    ExecutionMode,
    HypervisorConnectionError,
    InventoryError,
    Operation,
    ValidationError,
    VMSpec,
)
from pvefleet.provisioner import FleetProvisioner, failed_labels
from pvefleet.reconciler import validate_for_create
from pvefleet.remote_executor import RemoteChannel

# Initialize CLI app and console
app = typer.Typer(
    name="pvefleet",
    help="Declarative Proxmox VM provisioning (apply/delete) using qm + cloud-init",
    add_completion=False,
)
console = Console()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)8s] %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

FILE_OPTION = typer.Option(..., "--file", "-f", help="VM inventory file (YAML)")
ONLY_OPTION = typer.Option(None, "--only", help="Limit to these VM ids (repeatable)")
VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="Enable debug logging")


def _load_records(config_file: Path, config: ProvisionConfig, only: Optional[List[int]]) -> List[VMSpec]:
    try:
        records = load_inventory(config_file, config)
    except InventoryError as e:
        console.print(f"❌ {escape(str(e))}")
        raise typer.Exit(1)

    if only:
        wanted = set(only)
        records = [r for r in records if r.vmid in wanted]

    if not records:
        console.print(f"⚠️  No VMs found in {config_file}")
        raise typer.Exit(0)
    return records


def _print_report(report: BatchReport) -> None:
    table = Table(title=f"{report.operation.value.capitalize()} Results")
    table.add_column("VMID", style="cyan")
    table.add_column("Name", style="blue")
    table.add_column("State", style="yellow")
    table.add_column("Actions", justify="right")
    table.add_column("Status", style="bold")

    for result in report.results:
        if result.skipped:
            status = "⏭️  Skipped"
        elif result.success:
            status = "✅ OK"
        else:
            status = "❌ Failed"
        table.add_row(
            str(result.vmid),
            escape(result.name),
            result.state.value if result.state else "-",
            str(len(result.actions)),
            status,
        )

    console.print(table)

    for result in report.failed:
        console.print(f"❌ VM {result.vmid}: {escape(result.error or 'unknown error')}")
        if result.failing_command:
            console.print(f"   command: {escape(result.failing_command)}")


def _run(
    operation: Operation,
    config_file: Path,
    dry_run: bool,
    only: Optional[List[int]],
    verbose: bool,
    workers: Optional[int] = None,
) -> None:
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = ProvisionConfig.from_environment()
        config.validate()
    except ValidationError as e:
        console.print(f"❌ {escape(str(e))}")
        raise typer.Exit(1)
    logger.debug(f"Configuration: {config.to_dict()}")

    records = _load_records(config_file, config, only)

    mode = ExecutionMode.PLAN if dry_run else ExecutionMode.APPLY
    console.print(f"🚀 {operation.value.capitalize()} for {len(records)} VM(s) from {config_file}")
    if dry_run:
        console.print("🔍 DRY RUN MODE - No changes will be made\n")

    with RemoteChannel(config.connection) as channel:
        provisioner = FleetProvisioner(config, channel=channel, max_workers=workers)
        previous = signal.signal(signal.SIGINT, lambda signum, frame: provisioner.cancel())
        try:
            report = provisioner.run(records, operation, mode)
        except HypervisorConnectionError as e:
            console.print(f"❌ {escape(str(e))}")
            raise typer.Exit(2)
        finally:
            signal.signal(signal.SIGINT, previous)

    _print_report(report)

    if report.failed:
        console.print(f"❌ Failed: {', '.join(failed_labels(report.results))}")
    if report.exit_code:
        raise typer.Exit(report.exit_code)


@app.command("apply")
def apply_vms(
    config_file: Path = FILE_OPTION,
    dry_run: bool = typer.Option(False, "--dry-run", help="Print planned actions without making changes"),
    workers: Optional[int] = typer.Option(None, "--workers", "-w", min=1, help="VMs to process in parallel"),
    only: Optional[List[int]] = ONLY_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """
    Create or update VMs to match the inventory.

    Re-running only adjusts differences: disks only grow, fields are set only
    when they differ, and pool membership is added when missing.
    """
    _run(Operation.APPLY, config_file, dry_run, only, verbose, workers)


@app.command("delete")
def delete_vms(
    config_file: Path = FILE_OPTION,
    dry_run: bool = typer.Option(False, "--dry-run", help="Print planned actions without making changes"),
    only: Optional[List[int]] = ONLY_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Stop and destroy the inventory's VMs (purging unreferenced disks)."""
    _run(Operation.DELETE, config_file, dry_run, only, verbose)


@app.command("validate")
def validate_inventory(config_file: Path = FILE_OPTION) -> None:
    """
    Validate the inventory without contacting the Proxmox node.

    Checks that every VM has what it needs to be created.
    """
    console.print(f"🔍 Validating inventory: {config_file}")

    try:
        config = ProvisionConfig.from_environment()
    except ValidationError as e:
        console.print(f"❌ {escape(str(e))}")
        raise typer.Exit(1)
    records = _load_records(config_file, config, None)

    table = Table(title="Validation Results")
    table.add_column("VMID", style="cyan")
    table.add_column("Name", style="blue")
    table.add_column("Source")
    table.add_column("net0")
    table.add_column("Status", style="bold")

    all_valid = True
    for spec in records:
        try:
            validate_for_create(spec)
            status = "✅ Valid"
        except ValidationError as e:
            all_valid = False
            status = f"❌ {escape(str(e))}"
        source = f"clone {spec.template_id}" if spec.is_clone else f"scratch {spec.disk.size_gb}G"
        table.add_row(str(spec.vmid), escape(spec.name), source, escape(spec.network.descriptor), status)

    console.print(table)

    if not all_valid:
        raise typer.Exit(1)
    console.print(f"✅ {len(records)} VM record(s) valid")


if __name__ == "__main__":
    app()
