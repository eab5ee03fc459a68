"""CLI — Audit trail commands."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.table import Table

from warden.cli.runtime import CLI_ACTOR, run_with_security
from warden.config import Settings
from warden.security.audit import event_for
from warden.security.manager import SecurityManager
from warden.security.models import (
    AuditAction,
    AuditFilter,
    AuditPage,
    EventCategory,
    RequestContext,
    ResourceType,
    Severity,
)

app = typer.Typer(help="Query, summarise, export and purge the audit trail.")
console = Console()

ConfigOption = Annotated[Path | None, typer.Option("--config", "-c", help="Path to config.yaml.")]

_SEVERITY_STYLES = {
    "CRITICAL": "bold red",
    "HIGH": "red",
    "MEDIUM": "yellow",
    "LOW": "green",
}

_CLI_CONTEXT = RequestContext(ip="localhost", user_agent="warden-cli")


def _since(hours: float | None) -> float | None:
    return time.time() - hours * 3600 if hours is not None else None


@app.command("query")
def query(
    action: str | None = typer.Option(None, help="Only this action, e.g. USER_LOGIN_FAILED."),
    actor: str | None = typer.Option(None, help="Only events by this actor id."),
    severity: Severity | None = typer.Option(None, case_sensitive=False),
    search: str | None = typer.Option(None, help="Substring of description / agent / actor."),
    since_hours: float | None = typer.Option(None, "--since-hours", help="Trailing window."),
    security_only: bool = typer.Option(False, "--security", help="Security-relevant events only."),
    limit: int = typer.Option(50, min=1, max=1000),
    config: ConfigOption = None,
) -> None:
    """Show the most recent matching audit events."""
    flt = AuditFilter(
        action=action.upper() if action else None,
        actor_id=actor,
        severity=severity,
        search=search,
        start=_since(since_hours),
        security_only=security_only,
    )

    async def _query(security: SecurityManager) -> AuditPage:
        return await security.audit.query(flt, page=1, page_size=limit)

    page = run_with_security(Settings.load(config_file=config), _query)

    table = Table(title=f"Audit events ({len(page.events)} of {page.total})")
    table.add_column("Time", style="dim")
    table.add_column("Severity")
    table.add_column("Action", style="cyan")
    table.add_column("Actor")
    table.add_column("IP")
    table.add_column("Result")
    table.add_column("Description")
    for event in page.events:
        sev = event.severity.value if event.severity else "-"
        table.add_row(
            event.to_dict()["time"],
            f"[{_SEVERITY_STYLES.get(sev, 'white')}]{sev}[/]",
            event.action,
            event.actor_name,
            event.ip,
            event.result.value,
            event.description,
        )
    console.print(table)


@app.command("stats")
def stats(
    since_hours: float | None = typer.Option(None, "--since-hours", help="Trailing window."),
    config: ConfigOption = None,
) -> None:
    """Summarise the audit trail."""
    start = _since(since_hours)

    async def _stats(security: SecurityManager) -> dict[str, Any]:
        return await security.audit.statistics(start=start)

    data = run_with_security(Settings.load(config_file=config), _stats)
    console.print(f"[bold]Total events:[/bold] {data['total']}")

    sev_table = Table(title="By severity")
    sev_table.add_column("Severity")
    sev_table.add_column("Count", justify="right")
    for sev, count in data["by_severity"].items():
        sev_table.add_row(f"[{_SEVERITY_STYLES.get(sev, 'white')}]{sev}[/]", str(count))
    console.print(sev_table)

    for key, title in (("by_action", "Top actions"), ("by_actor", "Top actors")):
        table = Table(title=title)
        table.add_column("Key", style="cyan")
        table.add_column("Count", justify="right")
        for bucket in data[key]:
            table.add_row(bucket["key"], str(bucket["count"]))
        console.print(table)


@app.command("export")
def export(
    fmt: str = typer.Option("json", "--format", "-f", help="json or csv."),
    output: Path | None = typer.Option(None, "--output", "-o", help="Write to file instead of stdout."),
    since_hours: float | None = typer.Option(None, "--since-hours", help="Trailing window."),
    limit: int | None = typer.Option(None, min=1),
    config: ConfigOption = None,
) -> None:
    """Export audit events as JSON or CSV."""
    fmt = fmt.lower()
    if fmt not in ("json", "csv"):
        console.print(f"[red]Unsupported format: {fmt}[/red]")
        raise typer.Exit(1)
    flt = AuditFilter(start=_since(since_hours))

    async def _export(security: SecurityManager) -> str:
        body = await security.audit.export(flt, fmt=fmt, limit=limit)
        await security.audit.append(
            event_for(
                AuditAction.AUDIT_EXPORTED,
                _CLI_CONTEXT,
                CLI_ACTOR,
                resource_type=ResourceType.AUDIT,
                category=EventCategory.DATA,
                description=f"Audit trail exported as {fmt}",
                details={"format": fmt, "limit": limit},
            )
        )
        return body

    body = run_with_security(Settings.load(config_file=config), _export)
    if output is None:
        typer.echo(body)
    else:
        output.write_text(body)
        console.print(f"[green]Exported to {output}[/green]")


@app.command("purge")
def purge(
    days: int | None = typer.Option(None, min=1, help="Retention in days (default: audit.retention_days)."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation."),
    config: ConfigOption = None,
) -> None:
    """Delete audit events older than the retention period."""
    settings = Settings.load(config_file=config)
    retention = days if days is not None else settings.audit.retention_days
    if not yes:
        typer.confirm(f"Delete audit events older than {retention} days?", abort=True)

    async def _purge(security: SecurityManager) -> int:
        deleted = await security.audit.purge_older_than(retention)
        await security.audit.append(
            event_for(
                AuditAction.AUDIT_PURGED,
                _CLI_CONTEXT,
                CLI_ACTOR,
                resource_type=ResourceType.AUDIT,
                category=EventCategory.SYSTEM,
                description=f"Purged {deleted} audit events older than {retention} days",
                details={"retention_days": retention, "deleted": deleted},
            )
        )
        return deleted

    deleted = run_with_security(settings, _purge)
    console.print(f"[green]Deleted {deleted} events older than {retention} days.[/green]")
