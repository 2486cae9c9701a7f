"""harvester remove / restore / cancel: source lifecycle management.

``remove`` soft-deletes a source: its pages, chunks and embeddings stay in
the database and ``restore`` brings it back. ``cancel`` stops an active
crawl without deleting anything.

Usage:
  harvester remove <SOURCE_ID>
  harvester remove <SOURCE_ID> --yes
  harvester restore <SOURCE_ID>
  harvester cancel <SOURCE_ID>
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from harvester.cli.common import console, load_settings, open_db, resolve_db
from harvester.cli.errors import err_source_not_found
from harvester.crawl.lifecycle import cancel_source, restore_source, soft_delete_source
from harvester.db.repository import Repository
from harvester.errors import SourceNotFound


def remove_cmd(
    source_id: Annotated[str, typer.Argument(help="Source to remove.")],
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the harvester database."),
    ] = None,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip confirmation prompt."),
    ] = False,
) -> None:
    """Soft-delete a source and cancel its queued jobs."""
    cfg = load_settings()
    conn = open_db(resolve_db(db, cfg))
    repo = Repository(conn)
    try:
        source = repo.get_source(source_id)
        if source is None:
            console.print(err_source_not_found(source_id))
            raise typer.Exit(1)

        pages = sum(repo.count_pages_by_status(source_id).values())
        chunks = repo.count_chunks_by_source(source_id)
        console.print(f"\nRemove source: [bold]{source.url}[/]")
        console.print(f"  Pages: {pages}  |  Chunks: {chunks}  |  Status: {source.status}")

        if not yes:
            if not typer.confirm("Confirm removal?", default=False):
                console.print("[dim]Cancelled.[/]")
                raise typer.Exit(0)

        soft_delete_source(conn, source_id)
        console.print(f"\n[green]✓[/] Removed: {source.url}")
        console.print(f"  [dim]Undo with:  harvester restore {source_id}[/]")
    finally:
        conn.close()


def restore_cmd(
    source_id: Annotated[str, typer.Argument(help="Soft-deleted source to restore.")],
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the harvester database."),
    ] = None,
) -> None:
    """Restore a soft-deleted source."""
    cfg = load_settings()
    conn = open_db(resolve_db(db, cfg))
    try:
        restored = restore_source(conn, source_id)
    except SourceNotFound as exc:
        console.print(err_source_not_found(source_id))
        raise typer.Exit(1) from exc
    finally:
        conn.close()

    if restored:
        console.print(f"[green]✓[/] Restored: {source_id}")
        console.print("  [dim]Pending pages are picked up by the next recovery run.[/]")
    else:
        console.print(f"[dim]Source {source_id} is not deleted; nothing to restore.[/]")


def cancel_cmd(
    source_id: Annotated[str, typer.Argument(help="Source whose crawl should stop.")],
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the harvester database."),
    ] = None,
) -> None:
    """Stop an active crawl: flag the source and cancel its open jobs."""
    cfg = load_settings()
    conn = open_db(resolve_db(db, cfg))
    try:
        cancelled = cancel_source(conn, source_id, reason="cancelled from CLI")
    except SourceNotFound as exc:
        console.print(err_source_not_found(source_id))
        raise typer.Exit(1) from exc
    finally:
        conn.close()
    console.print(f"[green]✓[/] Cancelled {cancelled} job(s) for {source_id}")
