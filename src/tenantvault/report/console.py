"""
Console report rendering for tenantvault.

Renders health, restore and audit results with Rich.

Design Principles:
    - Status at a glance: Icons and colors for state
    - Summary first: Counts before detail rows
    - No payloads: Only ids, tenants and fingerprints are shown
"""

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from tenantvault.schema import (
    AuditAction,
    AuditEntry,
    ChainVerification,
    HealthReport,
    HealthState,
    RestoreReport,
)

ICON_SUCCESS = "[green]✓[/green]"
ICON_ERROR = "[red]✗[/red]"
ICON_WARNING = "[yellow]⊘[/yellow]"

_STATE_STYLES = {
    HealthState.HEALTHY: "green",
    HealthState.DEGRADED: "yellow",
    HealthState.REPAIRING: "yellow",
    HealthState.CHECKING: "dim",
    HealthState.UNKNOWN: "dim",
    HealthState.FAILED: "red",
}

_ACTION_STYLES = {
    AuditAction.CREATE: "green",
    AuditAction.UPDATE: "cyan",
    AuditAction.DELETE: "red",
}


def _format_bytes(value: int | None) -> str:
    if value is None:
        return "n/a"
    size = float(value)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


def render_health(console: Console, report: HealthReport, db_path: str = "") -> None:
    """Print a health report."""
    style = _STATE_STYLES.get(report.state, "dim")
    icon = ICON_SUCCESS if report.healthy else ICON_ERROR

    header = Text()
    header.append(" Store ", style="bold")
    header.append(db_path or "tenantvault", style="bold cyan")
    header.append(" │ ", style="dim")
    header.append(report.state.value.upper(), style=f"bold {style}")
    console.print(Panel(header, expand=False))

    console.print(f"{icon} Schema version [bold]{report.schema_version}[/bold]")
    if report.transitions:
        path = " → ".join(s.value for s in report.transitions)
        console.print(f"  [dim]Transitions:[/dim] {path}")
    for name in report.repaired:
        console.print(f"  {ICON_WARNING} repaired [yellow]{name}[/yellow]")
    for name in report.missing_collections + report.missing_indexes:
        console.print(f"  {ICON_ERROR} missing [red]{name}[/red]")
    console.print()

    table = Table(show_header=True, header_style="bold")
    table.add_column("Collection", style="cyan")
    table.add_column("Records", justify="right")
    for name, count in report.record_counts.items():
        table.add_row(name, str(count))
    table.add_row("[dim]audit entries[/dim]", str(report.audit_entries))
    console.print(table)

    storage = report.storage
    console.print(
        f"[dim]Database: {_format_bytes(storage.database_bytes)} | "
        f"Disk free: {_format_bytes(storage.disk_free_bytes)} of "
        f"{_format_bytes(storage.disk_total_bytes)}[/dim]"
    )


def render_restore(console: Console, report: RestoreReport) -> None:
    """Print a restore report."""
    table = Table(show_header=True, header_style="bold")
    table.add_column("Collection", style="cyan")
    table.add_column("Restored", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Conflicts")

    for name, stats in report.collections.items():
        conflicts = ", ".join(str(i) for i in stats.conflicts[:10])
        if len(stats.conflicts) > 10:
            conflicts += f" ... (+{len(stats.conflicts) - 10})"
        failed = f"[red]{stats.failed}[/red]" if stats.failed else "0"
        table.add_row(name, str(stats.restored), str(stats.skipped), failed, conflicts)

    console.print(table)
    for name, stats in report.collections.items():
        for error in stats.errors[:5]:
            console.print(f"  {ICON_ERROR} [red]{name}: {error}[/red]")

    console.print(
        f"[dim]Restored: {report.restored} | Skipped: {report.skipped} | "
        f"Failed: {report.failed}[/dim]"
    )


def render_audit(console: Console, entries: list[AuditEntry]) -> None:
    """Print audit entries as a table."""
    if not entries:
        console.print("[dim]No audit entries found.[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Seq", style="dim", justify="right")
    table.add_column("Time")
    table.add_column("Actor", style="cyan")
    table.add_column("Action", width=8)
    table.add_column("Record")
    table.add_column("Tenant")

    for entry in entries:
        style = _ACTION_STYLES.get(entry.action, "white")
        table.add_row(
            str(entry.sequence),
            entry.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            f"{entry.actor_id} ({entry.actor_role.value})",
            f"[{style}]{entry.action.value}[/{style}]",
            f"{entry.collection}/{entry.record_id}",
            entry.record_tenant or "—",
        )
    console.print(table)


def render_verification(console: Console, result: ChainVerification) -> None:
    """Print the outcome of an audit chain verification."""
    if result.valid:
        console.print(f"{ICON_SUCCESS} Audit chain intact ({result.entries_checked} entries)")
    else:
        console.print(
            f"{ICON_ERROR} Audit chain broken at sequence "
            f"[bold]{result.broken_at}[/bold]: [red]{result.reason}[/red]"
        )
