"""harvester status / events: inspect sources and the workflow event stream.

``status`` without an argument lists every source; with a SOURCE_ID it shows
the crawl, training and recrawl state, page counts and content statistics.
``events`` prints the append-only event log, optionally following it.
"""

from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Annotated

import typer
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from harvester.cli.common import console, load_settings, open_db, resolve_db
from harvester.cli.errors import err_source_not_found
from harvester.db.models import Source, SourceStatus
from harvester.db.repository import Repository
from harvester.events import EventBus

_STATUS_STYLE = {
    SourceStatus.PENDING: "dim",
    SourceStatus.IN_PROGRESS: "cyan",
    SourceStatus.RECRAWLING: "cyan",
    SourceStatus.READY_FOR_TRAINING: "green",
    SourceStatus.TRAINING: "magenta",
    SourceStatus.TRAINED: "bold green",
    SourceStatus.FAILED: "red",
}


def status_cmd(
    source_id: Annotated[
        str | None,
        typer.Argument(help="Show details for this source only."),
    ] = None,
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the harvester database."),
    ] = None,
    include_deleted: Annotated[
        bool,
        typer.Option("--all", help="Include soft-deleted sources."),
    ] = False,
) -> None:
    """Show crawl status of one source or all sources."""
    cfg = load_settings()
    conn = open_db(resolve_db(db, cfg))
    repo = Repository(conn)
    try:
        if source_id is None:
            _show_sources(repo.list_sources(include_deleted=include_deleted))
            return
        source = repo.get_source(source_id, include_deleted=include_deleted)
        if source is None:
            console.print(err_source_not_found(source_id))
            raise typer.Exit(1)
        _show_source(repo, source)
    finally:
        conn.close()


def events_cmd(
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the harvester database."),
    ] = None,
    source: Annotated[
        str | None,
        typer.Option("--source", "-s", help="Only events of this source."),
    ] = None,
    event_type: Annotated[
        str | None,
        typer.Option("--type", "-t", help="Only events of this type."),
    ] = None,
    after: Annotated[
        int,
        typer.Option("--after", help="Only events with an id greater than this."),
    ] = 0,
    limit: Annotated[
        int,
        typer.Option("--limit", "-n", min=1, help="Maximum events per poll."),
    ] = 50,
    follow: Annotated[
        bool,
        typer.Option("--follow", "-f", help="Keep polling for new events until Ctrl-C."),
    ] = False,
) -> None:
    """Print workflow events, oldest first."""
    cfg = load_settings()
    conn = open_db(resolve_db(db, cfg))
    bus = EventBus(conn)
    last_id = after
    try:
        while True:
            batch = bus.poll(last_id, source_id=source, event_type=event_type, limit=limit)
            for event in batch:
                meta = json.dumps(event.metadata_dict, separators=(",", ":"))
                console.print(
                    f"[dim]{event.id:>6}  {event.created_at}[/]  [bold]{event.event_type}[/]"
                    f"  {event.source_id or '-'}  {escape(meta)}",
                    highlight=False,
                )
                last_id = event.id or last_id
            if not follow:
                if not batch:
                    console.print("[dim]No events.[/]")
                break
            if not batch:
                time.sleep(cfg.queue.poll_interval)
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped.[/]")
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Renderers
# ---------------------------------------------------------------------------


def _styled(status: str) -> str:
    style = _STATUS_STYLE.get(status, "white")
    return f"[{style}]{status}[/]"


def _show_sources(sources: list[Source]) -> None:
    if not sources:
        console.print("[yellow]No sources yet.[/]\n  Run:  harvester crawl <URL>")
        return

    table = Table(title="Sources", expand=False)
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("URL")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Pages (done/failed/total)", justify="right")
    table.add_column("Training")
    for source in sources:
        crawl = source.crawl
        flags = []
        if source.recrawl.is_recrawling:
            flags.append("recrawl")
        if source.pending_removal:
            flags.append("removing")
        if source.deleted_at:
            flags.append("deleted")
        status = _styled(crawl.status) + (f" [dim]({', '.join(flags)})[/]" if flags else "")
        table.add_row(
            source.id,
            source.url,
            status,
            f"{crawl.progress}%",
            f"{crawl.completed_jobs}/{crawl.failed_jobs}/{crawl.total_jobs}",
            source.training.status,
        )
    console.print(table)


def _show_source(repo: Repository, source: Source) -> None:
    crawl = source.crawl
    pages = repo.count_pages_by_status(source.id)
    content = source.content
    lines = [
        f"URL:        {source.url}",
        f"Status:     {_styled(crawl.status)}  ({crawl.progress}%)",
        f"Pages:      {pages['completed']} completed, {pages['failed']} failed, "
        f"{pages['in_progress']} in progress, {pages['pending']} pending",
        f"Chunks:     {repo.count_chunks_by_source(source.id):,}  |  "
        f"Embeddings: {repo.count_embeddings_by_source(source.id):,}",
        f"Content:    {content.total_content_size:,} B  |  "
        f"compressed {content.compressed_content_size:,} B  |  "
        f"ratio {content.global_compression_ratio:.2f}",
        f"Training:   {source.training.status}",
    ]
    if crawl.last_crawled_at:
        lines.append(f"Last crawl: {crawl.last_crawled_at}")
    if source.recrawl.is_recrawling:
        lines.append(
            f"Recrawl:    started {source.recrawl.started_at} by {source.recrawl.initiated_by}"
        )
    if source.pending_removal:
        lines.append("[yellow]Pending removal[/]")
    if source.deleted_at:
        lines.append(f"[red]Deleted at {source.deleted_at}[/]")
    if crawl.error_summary:
        lines.append(f"[red]Errors:[/]     {crawl.error_summary}")
    console.print(Panel("\n".join(lines), title=f"[bold]{source.id}[/]", expand=False))
