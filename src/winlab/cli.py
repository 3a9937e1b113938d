#!/usr/bin/env python3
"""
winlab CLI - Hyper-V templates, VM provisioning and staged host deployment.

    winlab templates presets                     # Built-in workload templates
    winlab templates create ApplicationServer app-large --set memory=16384
    winlab vm create app-large --name APP01 --network External --start
    winlab host deploy host.yaml                 # Resumes after each restart
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import List, NoReturn, Optional, Tuple

import typer
from rich.console import Console
from rich.table import Table

from winlab import catalog
from winlab.config import Settings, get_settings
from winlab.executor import ProvisioningExecutor
from winlab.host_workflow import (
    HostDeploymentWorkflow,
    PowerShellHostActions,
    WorkflowOutcome,
    load_host_config,
)
from winlab.hyperv import HyperVHost
from winlab.models import NotFound, TemplateRecord, TemplateSpec, ValidationError, WinlabError, WorkloadType
from winlab.planner import ProvisioningPlan, plan as build_plan
from winlab.stages import StageController
from winlab.template_store import FileTemplateStore, MemoryTemplateStore, TemplateStore

app = typer.Typer(name="winlab", help="Windows host and Hyper-V VM provisioning", add_completion=False)
templates_app = typer.Typer(help="Hardware template commands")
vm_app = typer.Typer(help="Virtual machine provisioning commands")
host_app = typer.Typer(help="Staged host deployment commands")
app.add_typer(templates_app, name="templates")
app.add_typer(vm_app, name="vm")
app.add_typer(host_app, name="host")

console = Console()
logger = logging.getLogger(__name__)


def configure_logging(log_dir: Path, verbose: bool = False) -> None:
    """Log to the console and to a per-run file under log_dir."""
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_dir / f"winlab_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"))
    except OSError as e:
        console.print(f"⚠️  Cannot write logs to {log_dir}: {e}")
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)8s] %(name)s: %(message)s",
        handlers=handlers,
    )


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Windows host and Hyper-V VM provisioning."""
    settings = get_settings()
    configure_logging(settings.log_dir, verbose)
    ctx.obj = settings


def _fail(message: str) -> NoReturn:
    console.print(f"❌ {message}")
    raise typer.Exit(1)


def _store(settings: Settings) -> TemplateStore:
    return FileTemplateStore.from_settings(settings)


def _resolve_template(store: TemplateStore, ref: str) -> Tuple[TemplateSpec, str]:
    """Accept a workload preset, a saved template id or a saved template name."""
    try:
        workload = WorkloadType.parse(ref)
    except ValidationError:
        workload = None
    if workload is not None:
        return catalog.get_preset(workload), workload.value
    try:
        record = store.load(ref)
    except NotFound:
        record = store.find_by_name(ref)
    return record.spec, record.template_id


def _spec_table(title: str) -> Table:
    table = Table(title=title)
    table.add_column("Template", style="cyan")
    table.add_column("Workload", style="blue")
    table.add_column("CPU", justify="right")
    table.add_column("Memory MB", justify="right")
    table.add_column("Disks GB")
    table.add_column("NICs", justify="right")
    table.add_column("Gen", justify="right")
    table.add_column("Dyn mem")
    table.add_column("Secure boot")
    return table


def _add_spec_row(table: Table, label: str, spec: TemplateSpec, *extra: str) -> None:
    disks = ", ".join(f"{role.value} {size}" for role, size in spec.disk_layout())
    table.add_row(
        label,
        spec.workload_type.value,
        str(spec.cpu_count),
        str(spec.memory_mb),
        disks,
        str(spec.adapter_count),
        str(spec.generation),
        "yes" if spec.dynamic_memory else "no",
        "yes" if spec.secure_boot else "no",
        *extra,
    )


def _print_plan(provisioning_plan: ProvisioningPlan, settings: Settings) -> None:
    table = Table(title=f"Plan for {provisioning_plan.instance_name}")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Hyper-V host", settings.hyperv_host if settings.remote else "local")
    table.add_row("Template", provisioning_plan.template_ref)
    table.add_row("Workload", provisioning_plan.workload_type.value)
    table.add_row("CPU", str(provisioning_plan.cpu_count))
    table.add_row("Memory", provisioning_plan.memory.describe())
    for disk in provisioning_plan.disks:
        table.add_row(f"{disk.role.value} disk", f"{disk.size_gb} GB")
    table.add_row("Adapters", f"{provisioning_plan.adapter_count} on {provisioning_plan.network}")
    table.add_row("Generation", str(provisioning_plan.generation))
    table.add_row("Secure boot", "on" if provisioning_plan.secure_boot else "off")
    table.add_row("Enhanced session", "on" if provisioning_plan.enhanced_session else "off")
    console.print(table)


def _print_record(record: TemplateRecord) -> None:
    table = Table(title=f"{record.name} ({record.template_id})")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("created_at", record.created_at.isoformat())
    table.add_row("engine_version", record.engine_version)
    for key, value in record.spec.to_dict().items():
        table.add_row(key, str(value))
    console.print(table)


# === TEMPLATE COMMANDS ===


@templates_app.command("presets")
def list_presets() -> None:
    """Show the built-in workload templates."""
    table = _spec_table("Built-in presets")
    for workload in WorkloadType:
        _add_spec_row(table, workload.value, catalog.get_preset(workload))
    console.print(table)


@templates_app.command("create")
def create_template(
    ctx: typer.Context,
    workload: str = typer.Argument(..., help="Workload preset to start from (or Custom)"),
    name: str = typer.Argument(..., help="Name for the saved template"),
    assignments: Optional[List[str]] = typer.Option(None, "--set", "-s", help="Override a field: field=value"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show the record without saving it"),
) -> None:
    """Save a template built from a preset with optional field overrides."""
    settings: Settings = ctx.obj
    store = MemoryTemplateStore(settings.engine_version) if dry_run else _store(settings)
    try:
        overrides = catalog.parse_assignments(assignments or [])
        workload_type = WorkloadType.parse(workload)
        if workload_type == WorkloadType.CUSTOM:
            spec = catalog.build_custom(overrides)
        else:
            spec = catalog.override(catalog.get_preset(workload_type), overrides)
        template_id = store.save(spec, name)
    except WinlabError as e:
        _fail(str(e))

    if dry_run:
        _print_record(store.load(template_id))
        console.print("Dry run: template not saved.")
        return
    console.print(f"✅ Saved template {name!r} as {template_id}")


@templates_app.command("list")
def list_templates(ctx: typer.Context) -> None:
    """List saved templates."""
    records = _store(ctx.obj).list()
    if not records:
        console.print("No saved templates.")
        return
    table = _spec_table("Saved templates")
    table.add_column("Id", style="dim")
    table.add_column("Created")
    for record in records:
        _add_spec_row(table, record.name, record.spec, record.template_id, record.created_at.strftime("%Y-%m-%d %H:%M"))
    console.print(table)


@templates_app.command("show")
def show_template(ctx: typer.Context, template_id: str = typer.Argument(..., help="Template id")) -> None:
    """Show one saved template."""
    try:
        record = _store(ctx.obj).load(template_id)
    except WinlabError as e:
        _fail(str(e))
    _print_record(record)


@templates_app.command("delete")
def delete_template(
    ctx: typer.Context,
    template_id: str = typer.Argument(..., help="Template id"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
) -> None:
    """Delete a saved template."""
    if not yes:
        typer.confirm(f"Delete template {template_id}?", abort=True)
    try:
        _store(ctx.obj).delete(template_id)
    except WinlabError as e:
        _fail(str(e))
    console.print(f"🗑️  Deleted template {template_id}")


# === VM COMMANDS ===


def _plan_from_options(
    settings: Settings, hypervisor: HyperVHost, template: str, name: str, network: Optional[str], assignments: List[str]
) -> ProvisioningPlan:
    spec, template_ref = _resolve_template(_store(settings), template)
    spec = catalog.override(spec, catalog.parse_assignments(assignments))
    return build_plan(
        spec,
        instance_name=name,
        network_target=network or settings.default_network,
        existing_names=hypervisor.list_instance_names(),
        available_networks=hypervisor.list_networks(),
        template_ref=template_ref,
    )


@vm_app.command("plan")
def plan_vm(
    ctx: typer.Context,
    template: str = typer.Argument(..., help="Preset workload, saved template id or name"),
    name: str = typer.Option(..., "--name", "-n", help="New VM name"),
    network: Optional[str] = typer.Option(None, "--network", help="Virtual switch (default from settings)"),
    assignments: Optional[List[str]] = typer.Option(None, "--set", "-s", help="Override a field: field=value"),
) -> None:
    """Show the resources a VM would get without creating it."""
    settings: Settings = ctx.obj
    try:
        provisioning_plan = _plan_from_options(
            settings, HyperVHost.from_settings(settings), template, name, network, assignments or []
        )
    except WinlabError as e:
        _fail(str(e))
    _print_plan(provisioning_plan, settings)


@vm_app.command("create")
def create_vm(
    ctx: typer.Context,
    template: str = typer.Argument(..., help="Preset workload, saved template id or name"),
    name: str = typer.Option(..., "--name", "-n", help="New VM name"),
    network: Optional[str] = typer.Option(None, "--network", help="Virtual switch (default from settings)"),
    assignments: Optional[List[str]] = typer.Option(None, "--set", "-s", help="Override a field: field=value"),
    start: bool = typer.Option(False, "--start", help="Start the VM once configured"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
) -> None:
    """Create and configure a VM from a template."""
    settings: Settings = ctx.obj
    hypervisor = HyperVHost.from_settings(settings)
    try:
        provisioning_plan = _plan_from_options(settings, hypervisor, template, name, network, assignments or [])
    except WinlabError as e:
        _fail(str(e))

    _print_plan(provisioning_plan, settings)
    if not yes:
        typer.confirm(f"Create VM {provisioning_plan.instance_name!r}?", abort=True)

    executor = ProvisioningExecutor(hypervisor, settings.enhanced_session_service)
    try:
        result = executor.execute(provisioning_plan, start=start)
    except WinlabError as e:
        _fail(str(e))

    if result.partial is not None:
        pending = ", ".join(step.label for step in result.not_attempted) or "none"
        console.print(f"⚠️  {result.partial}")
        console.print(f"   Steps not attempted: {pending}")
        for disk in result.unattached_disks:
            console.print(f"   Disk created but not attached: {disk.path}")
        raise typer.Exit(2)

    state = "running" if result.started else "stopped"
    console.print(f"✅ VM {provisioning_plan.instance_name!r} provisioned ({state})")


# === HOST COMMANDS ===


@host_app.command("deploy")
def deploy_host(
    ctx: typer.Context,
    config_file: Optional[Path] = typer.Argument(None, help="Host YAML config; omit to resume a paused run"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Restart without asking"),
) -> None:
    """Run or resume the staged host deployment."""
    settings: Settings = ctx.obj
    stages = StageController.from_settings(settings)
    try:
        config = load_host_config(config_file) if config_file else None
        workflow = HostDeploymentWorkflow(stages, PowerShellHostActions.from_settings(settings), config)

        def confirm_restart(reason: str) -> bool:
            return yes or typer.confirm(f"Restart now to {reason}?", default=True)

        outcome = workflow.run(confirm_restart)
    except WinlabError as e:
        _fail(str(e))

    if outcome == WorkflowOutcome.COMPLETED:
        console.print("✅ Host deployment complete")
    elif outcome == WorkflowOutcome.RESTARTING:
        console.print("🔄 Restarting; run 'winlab host deploy' again after the host is back")
    else:
        console.print(f"⏸️  Paused at stage {stages.resume()}; run 'winlab host deploy' to continue")


@host_app.command("status")
def host_status(ctx: typer.Context) -> None:
    """Show the recorded deployment stage."""
    stages = StageController.from_settings(ctx.obj)
    record = stages.record()
    if record is None:
        console.print("No deployment in progress (next run starts at stage 1)")
        return
    table = Table(title="Host deployment")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Status", record.status.value)
    table.add_row("Stage", str(record.stage))
    table.add_row("Last action", record.action or "-")
    table.add_row("Started", record.started_at)
    table.add_row("Updated", record.updated_at)
    config = record.snapshot.get("config")
    computer = config.get("computer_name") if isinstance(config, dict) else None
    if computer:
        table.add_row("Computer", str(computer))
    console.print(table)


@host_app.command("reset")
def host_reset(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
) -> None:
    """Forget the recorded deployment stage."""
    if not yes:
        typer.confirm("Discard the recorded deployment stage?", abort=True)
    StageController.from_settings(ctx.obj).reset()
    console.print("🗑️  Stage record removed")


if __name__ == "__main__":
    app()
