"""harvester work / orchestrate: run the job queue.

``work`` runs a single worker in the foreground. ``orchestrate`` runs the
full supervisor (queue timer, health checks, recovery) until Ctrl-C.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Annotated

import typer

from harvester.cli.common import console, load_settings, open_db, resolve_db
from harvester.cli.errors import err_storage
from harvester.crawl.worker import Worker
from harvester.db.connection import Database
from harvester.errors import StorageFailure
from harvester.monitor.orchestrator import CrawlOrchestrator


def work_cmd(
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the harvester database."),
    ] = None,
    once: Annotated[
        bool,
        typer.Option("--once", help="Claim and run a single batch, then exit."),
    ] = False,
    max_jobs: Annotated[
        int | None,
        typer.Option("--max-jobs", min=1, help="Batch size (defaults to queue.batch_size)."),
    ] = None,
    worker_id: Annotated[
        str | None,
        typer.Option("--worker-id", help="Id recorded on claimed jobs."),
    ] = None,
) -> None:
    """Claim queued jobs and run them."""
    cfg = load_settings()
    conn = open_db(resolve_db(db, cfg))
    try:
        worker = Worker(conn, cfg, worker_id=worker_id)
        if once:
            try:
                handled = worker.run_once(max_jobs)
            except StorageFailure as exc:
                console.print(err_storage(str(exc)))
                raise typer.Exit(1) from exc
            if handled:
                console.print(f"[green]✓[/] Processed {handled} job(s)")
            else:
                console.print("[dim]Queue is empty.[/]")
            return

        console.print(f"Worker [bold]{worker.worker_id}[/] running. Press Ctrl-C to stop.")
        stop = threading.Event()
        try:
            worker.run(stop)
        except KeyboardInterrupt:
            stop.set()
            console.print("\n[dim]Stopped.[/]")
    finally:
        conn.close()


def orchestrate_cmd(
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the harvester database."),
    ] = None,
    run_for: Annotated[
        float | None,
        typer.Option("--run-for", hidden=True, help="Stop after this many seconds."),
    ] = None,
) -> None:
    """Run workers, health checks and recovery until interrupted."""
    cfg = load_settings()
    db_path = resolve_db(db, cfg)
    open_db(db_path).close()

    health = cfg.health
    console.print(
        f"Orchestrating [bold]{db_path}[/] "
        f"(queue {health.queue_interval:g}s, health {health.health_interval:g}s, "
        f"recovery {health.recovery_interval:g}s). Press Ctrl-C to stop."
    )
    with CrawlOrchestrator(Database(db_path), cfg):
        try:
            threading.Event().wait(run_for)
        except KeyboardInterrupt:
            console.print("\n[dim]Stopping…[/]")
    console.print("[green]✓[/] Orchestrator stopped")
