"""harvester crawl / recrawl: queue crawl jobs for a site.

Usage:
  harvester crawl https://docs.example.com --max-pages 50
  harvester crawl https://example.com --include "/docs/*" --exclude "*/v1/*"
  harvester recrawl <SOURCE_ID>
  harvester recrawl <SOURCE_ID> --url https://example.com/changed
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn

from harvester.cli.common import console, load_settings, open_db, resolve_db
from harvester.cli.errors import err_invalid_url, err_rejected, err_source_not_found, err_storage
from harvester.crawl.initiator import CrawlOptions, initiate_crawl, start_recrawl
from harvester.errors import SourceNotFound, StorageFailure, ValidationFailure


def crawl_cmd(
    url: Annotated[str, typer.Argument(help="Start URL of the site to crawl.")],
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the harvester database (created if missing)."),
    ] = None,
    max_pages: Annotated[
        int | None,
        typer.Option("--max-pages", min=1, help="Maximum pages to queue."),
    ] = None,
    include: Annotated[
        list[str] | None,
        typer.Option("--include", help="Glob a URL must match (repeatable)."),
    ] = None,
    exclude: Annotated[
        list[str] | None,
        typer.Option("--exclude", help="Glob that drops a URL (repeatable)."),
    ] = None,
    no_robots: Annotated[
        bool,
        typer.Option("--no-robots", help="Ignore robots.txt."),
    ] = False,
    no_sitemap: Annotated[
        bool,
        typer.Option("--no-sitemap", help="Skip sitemap.xml; discover links from the start page."),
    ] = False,
    priority: Annotated[
        int,
        typer.Option("--priority", help="Priority of the queued jobs (higher runs first)."),
    ] = 0,
) -> None:
    """Discover the pages of a site and queue one crawl job per page."""
    cfg = load_settings()
    options = CrawlOptions(
        max_pages=max_pages,
        include_patterns=include or [],
        exclude_patterns=exclude or [],
        respect_robots=False if no_robots else None,
        use_sitemap=False if no_sitemap else None,
        priority=priority,
    )

    conn = open_db(resolve_db(db, cfg), must_exist=False)
    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            transient=True,
            console=console,
        ) as prog:
            prog.add_task("Discovering pages…", total=None)
            result = initiate_crawl(conn, url, options, config=cfg)
    except ValidationFailure as exc:
        console.print(err_invalid_url(url, str(exc)))
        raise typer.Exit(1) from exc
    except StorageFailure as exc:
        console.print(err_storage(str(exc)))
        raise typer.Exit(1) from exc
    finally:
        conn.close()

    lines = [
        f"Source:     [bold]{result.source_id}[/]",
        f"Discovered: {result.discovered} URL(s) via {result.discovery_method}",
        f"Filtered:   {result.filtered}",
        f"Robots:     {result.skipped_by_robots} skipped",
        f"Queued:     [bold]{result.total_jobs}[/] crawl job(s)",
    ]
    console.print(Panel("\n".join(lines), title="[bold]Crawl queued[/]", expand=False))
    console.print("[dim]Run:  harvester work  (or harvester orchestrate) to process the queue.[/]")


def recrawl_cmd(
    source_id: Annotated[str, typer.Argument(help="Source to recrawl.")],
    url: Annotated[
        list[str] | None,
        typer.Option("--url", "-u", help="Recrawl only this page (repeatable)."),
    ] = None,
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the harvester database."),
    ] = None,
) -> None:
    """Recrawl a source (all pages, or only the given URLs)."""
    cfg = load_settings()
    conn = open_db(resolve_db(db, cfg))
    try:
        result = start_recrawl(conn, source_id, url or None, initiated_by="cli", config=cfg)
    except SourceNotFound as exc:
        console.print(err_source_not_found(source_id))
        raise typer.Exit(1) from exc
    except ValidationFailure as exc:
        console.print(err_rejected(str(exc)))
        raise typer.Exit(1) from exc
    finally:
        conn.close()

    console.print(
        f"[green]✓[/] Recrawl started for [bold]{source_id}[/]: {result.total_jobs} job(s) queued"
    )
