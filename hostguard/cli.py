"""hostguard CLI: reconcile a container fleet against its inventory."""

from __future__ import annotations

import logging
import sys
import tempfile
from dataclasses import dataclass

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from hostguard import __version__
from hostguard.config import audit_dir, state_dir
from hostguard.errors import HostguardError
from hostguard.hosts.factory import backend_for, simulated_backend
from hostguard.inventory.loader import load_inventory
from hostguard.inventory.models import Host, Inventory
from hostguard.reconcile.fleet import DEFAULT_WORKERS, reconcile_fleet
from hostguard.reconcile.reconciler import HostReport, Reconciler
from hostguard.state.audit import AuditLogger
from hostguard.state.store import StateStore

console = Console()

DEFAULT_INVENTORY = "inventory.yaml"


@dataclass
class Options:
    inventory: str
    state_dir: str | None
    audit_dir: str | None
    root: str

    def load(self) -> Inventory:
        return load_inventory(self.inventory)

    def store(self) -> StateStore:
        return StateStore(state_dir(self.state_dir))

    def reconciler(self, inventory: Inventory) -> Reconciler:
        return Reconciler(inventory, self.store(), AuditLogger(audit_dir(self.audit_dir)))

    def backend(self, host: Host):
        return backend_for(host, root=self.root)


def _fail(error: HostguardError | str) -> None:
    console.print(f"[red]Error:[/] {escape(str(error))}")
    sys.exit(1)


def _select(inventory: Inventory, hosts: tuple, tags: tuple) -> list[Host]:
    selected = inventory.select_hosts(list(hosts) or None, list(tags) or None)
    unknown = [h for h in hosts if h not in inventory.hosts]
    if unknown:
        _fail(f"Unknown host(s): {', '.join(unknown)}")
    if not selected:
        _fail("No hosts match the given --host/--tag filters")
    return selected


def _print_reports(reports: list[HostReport]) -> bool:
    """Print per-host change lists and a summary table. True when every host succeeded."""
    for report in reports:
        title = f"{report.host} ({'dry run' if report.dry_run else 'applied'})"
        lines = [escape(change.describe()) for change in report.changes]
        lines += [escape(finding.describe()) for finding in report.findings]
        if report.error:
            lines.append(f"[red]FAILED at {report.failed_step}:[/] {escape(str(report.error))}")
        console.print(Panel("\n".join(lines) or "[green]converged, no changes[/]", title=title))

    table = Table(title=f"Hosts ({len(reports)})")
    table.add_column("Host", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("Changes", justify="right")
    table.add_column("Drift", justify="right")
    table.add_column("Failed step")
    for report in reports:
        status = "[green]OK[/]" if report.ok else "[red]FAILED[/]"
        drift = sum(1 for f in report.findings if f.is_failure)
        table.add_row(report.host, status, str(len(report.changes)), str(drift), report.failed_step)
    console.print(table)
    return all(r.ok for r in reports)


@click.group()
@click.version_option(version=__version__)
@click.option("--inventory", "-i", default=DEFAULT_INVENTORY, envvar="HOSTGUARD_INVENTORY",
              help="Inventory file, directory, or Git URL")
@click.option("--state-dir", default=None, help="Snapshot and history directory")
@click.option("--audit-dir", default=None, help="Audit journal directory")
@click.option("--root", default="/", help="Filesystem root of the local host")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def main(ctx, inventory: str, state_dir: str | None, audit_dir: str | None, root: str, verbose: bool):
    """hostguard - container host security reconciler.

    Converges every host in the inventory to the platform's isolation
    policy: remapped identities, named-only storage, owner-only secrets.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    ctx.obj = Options(inventory=inventory, state_dir=state_dir, audit_dir=audit_dir, root=root)


# ── Reconcile ────────────────────────────────────────────────────────


def _run(opts: Options, hosts: tuple, tags: tuple, roles: tuple, workers: int, dry_run: bool) -> None:
    try:
        inventory = opts.load()
    except HostguardError as e:
        _fail(e)
    selected = _select(inventory, hosts, tags)
    reconciler = opts.reconciler(inventory)
    reports = reconcile_fleet(
        reconciler,
        selected,
        opts.backend,
        dry_run=dry_run,
        roles=list(roles) or None,
        workers=workers,
    )
    if not _print_reports(reports):
        sys.exit(1)


@main.command()
@click.option("--host", "-h", "hosts", multiple=True, help="Limit to host (repeatable)")
@click.option("--tag", "-t", "tags", multiple=True, help="Limit to hosts with tag (repeatable)")
@click.option("--role", "-r", "roles", multiple=True, help="Limit to role (repeatable)")
@click.option("--workers", "-w", default=DEFAULT_WORKERS, show_default=True, help="Hosts reconciled in parallel")
@click.pass_obj
def reconcile(opts: Options, hosts: tuple, tags: tuple, roles: tuple, workers: int):
    """Run one reconciliation pass against each selected host."""
    console.print(f"\n[bold blue]hostguard[/] — Reconciling from {opts.inventory}\n")
    _run(opts, hosts, tags, roles, workers, dry_run=False)


@main.command()
@click.option("--host", "-h", "hosts", multiple=True, help="Limit to host (repeatable)")
@click.option("--tag", "-t", "tags", multiple=True, help="Limit to hosts with tag (repeatable)")
@click.option("--role", "-r", "roles", multiple=True, help="Limit to role (repeatable)")
@click.option("--workers", "-w", default=DEFAULT_WORKERS, show_default=True, help="Hosts checked in parallel")
@click.pass_obj
def validate(opts: Options, hosts: tuple, tags: tuple, roles: tuple, workers: int):
    """Plan a pass against each selected host without changing anything."""
    console.print("\n[bold blue]hostguard[/] — Validating against live hosts\n")
    _run(opts, hosts, tags, roles, workers, dry_run=True)


@main.command()
@click.option("--host", "-h", "hosts", multiple=True, help="Limit to host (repeatable)")
@click.option("--tag", "-t", "tags", multiple=True, help="Limit to hosts with tag (repeatable)")
@click.pass_obj
def preview(opts: Options, hosts: tuple, tags: tuple):
    """Show the full change-set a freshly installed host would receive.

    Plans against an empty simulated host with no recorded state, so nothing
    is read from or written to the real fleet.
    """
    try:
        inventory = opts.load()
    except HostguardError as e:
        _fail(e)
    selected = _select(inventory, hosts, tags)

    failed = False
    with tempfile.TemporaryDirectory() as tmpdir:
        reconciler = Reconciler(inventory, StateStore(tmpdir))
        for host in selected:
            try:
                plan = reconciler.plan(host.name, simulated_backend(host))
            except HostguardError as e:
                console.print(Panel(f"[red]{e.kind}:[/] {escape(str(e))}", title=f"{host.name} (invalid)"))
                failed = True
                continue
            lines = [escape(change.describe()) for change in plan.changeset.changes]
            lines += [escape(finding.describe()) for finding in plan.changeset.findings]
            console.print(Panel("\n".join(lines), title=f"{host.name} (preview)"))
            console.print(f"  {plan.changeset.summary()}")
    if failed:
        sys.exit(1)


# ── Identity ─────────────────────────────────────────────────────────


@main.command()
@click.pass_obj
def identity(opts: Options):
    """Print the identity mapping each host uses."""
    from hostguard.identity.allocator import check_fleet_ranges, effective_range

    try:
        inventory = opts.load()
    except HostguardError as e:
        _fail(e)
    try:
        outliers = check_fleet_ranges(inventory)
    except HostguardError as e:
        _fail(e)

    table = Table(title="Identity mappings")
    table.add_column("Host", style="cyan")
    table.add_column("Account")
    table.add_column("Range")
    table.add_column("Container uid:gid -> host")
    for host in inventory.hosts.values():
        mapping = effective_range(host, inventory.roles_for(host), inventory.platform)
        uid, gid = mapping.host_ids(inventory.platform.container_uid, inventory.platform.container_gid)
        span = f"{mapping.range_start}:{mapping.range_size}"
        if host.name in outliers:
            span = f"[yellow]{span}[/]"
        table.add_row(
            host.name,
            mapping.account,
            span,
            f"{inventory.platform.container_uid}:{inventory.platform.container_gid} -> {uid}:{gid}",
        )
    console.print(table)
    if outliers:
        console.print("[yellow]![/] Highlighted hosts use a non-default range; their data cannot migrate to default hosts.")


# ── Migration ────────────────────────────────────────────────────────


@main.command()
@click.argument("role")
@click.option("--from", "source", required=True, help="Host currently running the role")
@click.option("--to", "destination", required=True, help="Host receiving the role's data")
@click.option("--resume", "resume", metavar="MIGRATION_ID", help="Resume a migration that failed during or after its restore")
@click.pass_obj
def migrate(opts: Options, role: str, source: str, destination: str, resume: str | None):
    """Move a stateful role's named volumes from one host to another.

    The destination must already have completed a successful pass with the
    role held (``hold: true`` in the inventory). A migration that failed
    while restoring or activating is retried with ``--resume <id>``; the id is
    shown by ``hostguard history --kind migration``.
    """
    from hostguard.migration.orchestrator import MigrationOrchestrator

    console.print(f"\n[bold blue]hostguard[/] — Migrating {role}: {source} -> {destination}\n")
    try:
        inventory = opts.load()
        source_backend = opts.backend(inventory.host(source))
        dest_backend = opts.backend(inventory.host(destination))
        orchestrator = MigrationOrchestrator(opts.reconciler(inventory))
        result = orchestrator.migrate(role, source, source_backend, destination, dest_backend, resume=resume)
    except HostguardError as e:
        console.print(f"  [red]x[/] {e.kind}: {escape(str(e))}")
        console.print("  Source service stays stopped and the destination unstarted until retried.")
        console.print("  Find the migration id with [bold]hostguard history --kind migration[/] to resume it.")
        sys.exit(1)

    for step in result.completed:
        console.print(f"  [green]v[/] {step}")
    for volume, size in result.volumes.items():
        console.print(f"    {volume}: {size} bytes")
    if not result.ok:
        _print_reports([result.activation])
        sys.exit(1)
    console.print(f"\n[green]Migration {result.migration_id} complete.[/]")


@main.command()
@click.argument("host")
@click.argument("role")
@click.pass_obj
def release(opts: Options, host: str, role: str):
    """Drop a migration hold so the next pass may start ROLE on HOST."""
    try:
        inventory = opts.load()
        inventory.host(host)
    except HostguardError as e:
        _fail(e)
    if opts.reconciler(inventory).release_hold(host, role):
        console.print(f"  [green]v[/] Released {role} on {host}")
    else:
        console.print(f"  [yellow]![/] {role} is not held on {host}")


# ── Secrets ──────────────────────────────────────────────────────────


@main.group()
def secrets():
    """Resolve secret drift."""


@secrets.command()
@click.argument("host")
@click.argument("role")
@click.argument("name")
@click.pass_obj
def rotate(opts: Options, host: str, role: str, name: str):
    """Regenerate a secret; the role's service restarts on the next pass."""
    try:
        inventory = opts.load()
        opts.reconciler(inventory).rotate_secret(host, opts.backend(inventory.host(host)), role, name)
    except HostguardError as e:
        _fail(e)
    console.print(f"  [green]v[/] Rotated {role}/{name} on {host}")


@secrets.command()
@click.argument("host")
@click.argument("role")
@click.argument("name")
@click.pass_obj
def accept(opts: Options, host: str, role: str, name: str):
    """Record a secret changed outside hostguard as authoritative."""
    try:
        inventory = opts.load()
        opts.reconciler(inventory).accept_secret(host, opts.backend(inventory.host(host)), role, name)
    except HostguardError as e:
        _fail(e)
    console.print(f"  [green]v[/] Accepted current {role}/{name} on {host}")


# ── Drift ────────────────────────────────────────────────────────────


@main.command()
@click.option("--host", "-h", "hosts", multiple=True, help="Limit to host (repeatable)")
@click.option("--tag", "-t", "tags", multiple=True, help="Limit to hosts with tag (repeatable)")
@click.pass_obj
def drift(opts: Options, hosts: tuple, tags: tuple):
    """Compare each host with what its last pass recorded."""
    from hostguard.state.drift import DriftDetector

    try:
        inventory = opts.load()
    except HostguardError as e:
        _fail(e)
    detector = DriftDetector(inventory.platform, opts.store())

    found = False
    for host in _select(inventory, hosts, tags):
        try:
            report = detector.check(host.name, opts.backend(host))
        except HostguardError as e:
            console.print(f"  [red]ERROR[/] {host.name}: {escape(str(e))}")
            found = True
            continue
        if report.has_drift:
            found = True
            console.print(f"  [red]DRIFT[/] {report.summary()}")
            for detail in report.details:
                console.print(f"    - {escape(detail)}")
        else:
            console.print(f"  [green]OK[/] {report.summary()}")
            for detail in report.details:
                console.print(f"    - {escape(detail)}")
    if found:
        sys.exit(1)


# ── History ──────────────────────────────────────────────────────────


@main.command()
@click.option("--host", "-h", default=None, help="Only this host")
@click.option("--kind", "-k", default=None, help="Only this event kind (reconcile, migration, ...)")
@click.option("--limit", "-n", default=20, show_default=True)
@click.pass_obj
def history(opts: Options, host: str | None, kind: str | None, limit: int):
    """Show recent passes, migrations and operator actions."""
    records = opts.store().get_history(host, kind)[-limit:]
    if not records:
        console.print("[yellow]No history recorded.[/]")
        return

    table = Table(title=f"History ({len(records)} shown)")
    table.add_column("When", style="dim")
    table.add_column("Host", style="cyan")
    table.add_column("Kind")
    table.add_column("Role")
    table.add_column("Status", justify="center")
    table.add_column("Changes", justify="right")
    table.add_column("Error")
    for r in records:
        status = "[green]success[/]" if r.status == "success" else f"[red]{r.status}[/]"
        step = r.details.get("step", "") if r.kind == "migration" else r.failed_step
        kind_label = f"{r.kind}:{step}" if step else r.kind
        if "migration_id" in r.details:
            kind_label += f" ({r.details['migration_id']})"
        table.add_row(r.recorded_at[:19], r.host, kind_label, r.role, status, str(r.changes), escape(r.error[:60]))
    console.print(table)


@main.command()
@click.option("--host", "-h", default=None, help="Only this host")
@click.option("--action", "-a", default=None, help="Only this action")
@click.option("--since", default=None, help="ISO timestamp lower bound")
@click.option("--format", "fmt", default="json", type=click.Choice(["json", "csv"]))
@click.option("--limit", "-n", default=200, show_default=True)
@click.pass_obj
def audit(opts: Options, host: str | None, action: str | None, since: str | None, fmt: str, limit: int):
    """Export the audit journal."""
    logger = AuditLogger(audit_dir(opts.audit_dir))
    click.echo(logger.export_events(fmt, host=host, action=action, start_date=since, limit=limit))


if __name__ == "__main__":
    main()
