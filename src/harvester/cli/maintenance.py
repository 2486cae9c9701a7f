"""harvester health / recover / emergency-reset: one-shot maintenance runs."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated

import typer
from rich.panel import Panel
from rich.table import Table

from harvester.cli.common import console, load_settings, open_db, resolve_db
from harvester.db.connection import Database
from harvester.monitor.health import HealthMonitor, HealthReport
from harvester.monitor.orchestrator import CrawlOrchestrator
from harvester.monitor.recovery import RecoveryReport, RecoveryService


def health_cmd(
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the harvester database."),
    ] = None,
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print the report as JSON."),
    ] = False,
) -> None:
    """Run one health check (fixes orphaned and stalled work)."""
    cfg = load_settings()
    conn = open_db(resolve_db(db, cfg))
    try:
        report = HealthMonitor(
            conn, cfg.health, max_attempts=cfg.queue.max_attempts
        ).run_health_check()
    finally:
        conn.close()

    if as_json:
        typer.echo(json.dumps(report.to_dict(), indent=2))
    else:
        _show_health(report)
    if not report.healthy:
        raise typer.Exit(2)


def recover_cmd(
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the harvester database."),
    ] = None,
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print the report as JSON."),
    ] = False,
) -> None:
    """Run the recovery service once."""
    cfg = load_settings()
    conn = open_db(resolve_db(db, cfg))
    try:
        report = RecoveryService(conn, cfg).run_recovery()
    finally:
        conn.close()

    if as_json:
        typer.echo(json.dumps(report.to_dict(), indent=2))
        return
    _show_recovery(report)


def emergency_reset_cmd(
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the harvester database."),
    ] = None,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip confirmation prompt."),
    ] = False,
) -> None:
    """Force every long-running processing job back to pending."""
    cfg = load_settings()
    db_path = resolve_db(db, cfg)
    open_db(db_path).close()

    if not yes:
        console.print(
            f"Jobs processing for more than {cfg.health.job_timeout}s will be returned to pending."
        )
        if not typer.confirm("Continue?", default=False):
            console.print("[dim]Cancelled.[/]")
            raise typer.Exit(0)

    count = CrawlOrchestrator(Database(db_path), cfg).emergency_reset()
    console.print(f"[green]✓[/] Reset {count} job(s) to pending")


# ---------------------------------------------------------------------------
# Renderers
# ---------------------------------------------------------------------------


def _show_health(report: HealthReport) -> None:
    state = "[green]healthy[/]" if report.healthy else "[red]unhealthy[/]"
    queue = report.queue_status
    lines = [
        f"Status:   {state}",
        f"Queue:    {queue.state}  ({queue.pending} pending, {queue.processing} processing)",
        f"Orphaned: {report.orphaned_pages}  |  Stalled jobs: {report.stalled_jobs}  |  "
        f"Stalled pages: {report.stalled_pages}",
    ]
    if queue.oldest_pending_at:
        lines.append(f"Oldest pending job: {queue.oldest_pending_at}")
    for issue in report.issues:
        lines.append(f"  [yellow]![/] {issue}")
    for action in report.actions:
        lines.append(f"  [green]✓[/] {action}")
    console.print(Panel("\n".join(lines), title="[bold]Health[/]", expand=False))


def _show_recovery(report: RecoveryReport) -> None:
    table = Table(title="Recovery", show_header=False, expand=False)
    table.add_column("Step")
    table.add_column("Count", justify="right")
    table.add_row("Orphaned pages found", str(report.orphaned_pages_found))
    table.add_row("Recovery jobs spawned", str(report.jobs_spawned))
    table.add_row("Stalled jobs recovered", str(report.stalled_jobs_recovered))
    table.add_row("Timed-out pages reset", str(report.timeout_jobs_reset))
    table.add_row("Failed pages retried", str(report.failed_pages_retried))
    table.add_row("Stale pending jobs refreshed", str(report.stale_pages_refreshed))
    console.print(table)
    for error in report.errors:
        console.print(f"  [red]✗[/] {error}")
    if not report.changed:
        console.print("[dim]Nothing to recover.[/]")
