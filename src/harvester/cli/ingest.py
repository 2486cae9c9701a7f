"""harvester embed / chunk: run the ingest stages by hand.

``embed`` generates embeddings for every stored chunk of a source that does
not have one yet. ``chunk`` previews how a local file would be chunked,
without touching the database.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.markup import escape
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from harvester.cli.common import console, load_settings, open_db, resolve_db
from harvester.cli.errors import err_no_api_key, err_no_file, err_rejected, err_source_not_found
from harvester.db.repository import Repository
from harvester.ingest.chunker import CONTENT_TYPES, chunk_text, options_for_content_type
from harvester.ingest.embeddings import EmbeddingGenerator, missing_provider_key

_PREVIEW_CHARS = 60
_EXT_TYPES = {
    ".md": "markdown",
    ".markdown": "markdown",
    ".html": "html",
    ".htm": "html",
    ".py": "code",
    ".js": "code",
    ".ts": "code",
    ".go": "code",
    ".rs": "code",
    ".java": "code",
    ".c": "code",
    ".cpp": "code",
    ".sh": "code",
}


def embed_cmd(
    source_id: Annotated[str, typer.Argument(help="Source whose chunks to embed.")],
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the harvester database."),
    ] = None,
) -> None:
    """Embed every stored chunk of a source (already embedded chunks are skipped)."""
    cfg = load_settings()
    provider = missing_provider_key(cfg.embedding.model)
    if provider is not None:
        console.print(err_no_api_key(provider))
        raise typer.Exit(1)

    conn = open_db(resolve_db(db, cfg))
    repo = Repository(conn)
    try:
        if repo.get_source(source_id) is None:
            console.print(err_source_not_found(source_id))
            raise typer.Exit(1)
        chunk_ids = repo.list_chunk_ids_by_source(source_id)
        if not chunk_ids:
            console.print("[yellow]No chunks stored for this source yet.[/]\n  Run:  harvester work")
            raise typer.Exit(0)

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            transient=True,
            console=console,
        ) as prog:
            prog.add_task(f"Embedding {len(chunk_ids)} chunk(s) with {cfg.embedding.model}…", total=None)
            result = EmbeddingGenerator(conn, cfg.embedding).generate_for_chunks(source_id, chunk_ids)
    finally:
        conn.close()

    console.print(
        f"[green]✓[/] {result.processed_count} embedded  |  "
        f"{result.skipped_count} skipped  |  {result.error_count} failed  "
        f"[dim](of {result.total_chunks})[/]"
    )
    for error in result.errors[:5]:
        console.print(f"  [red]✗[/] {escape(error)}")
    if result.error_count:
        raise typer.Exit(1)


def chunk_cmd(
    file: Annotated[Path, typer.Argument(help="File to chunk.")],
    content_type: Annotated[
        str | None,
        typer.Option(
            "--content-type",
            "-t",
            help=f"One of: {', '.join(CONTENT_TYPES)} (guessed from the extension when omitted).",
        ),
    ] = None,
    max_tokens: Annotated[
        int | None,
        typer.Option("--max-tokens", min=1, help="Token budget per chunk."),
    ] = None,
    overlap: Annotated[
        int | None,
        typer.Option("--overlap", min=0, help="Overlap tokens taken from each neighbour."),
    ] = None,
    no_paragraphs: Annotated[
        bool,
        typer.Option("--no-paragraphs", help="Do not keep paragraphs together."),
    ] = False,
) -> None:
    """Preview how a file would be chunked."""
    load_settings()
    if not file.is_file():
        console.print(err_no_file(str(file)))
        raise typer.Exit(1)

    ctype = content_type or _EXT_TYPES.get(file.suffix.lower(), "text")
    overrides: dict[str, object] = {}
    if max_tokens is not None:
        overrides["max_tokens"] = max_tokens
    if overlap is not None:
        overrides["overlap_tokens"] = overlap
    if no_paragraphs:
        overrides["preserve_paragraphs"] = False
    try:
        options = options_for_content_type(ctype, **overrides)
    except ValueError as exc:
        console.print(err_rejected(str(exc)))
        raise typer.Exit(1) from exc

    result = chunk_text(file.read_text(encoding="utf-8", errors="replace"), options)

    table = Table(title=f"{file.name} ({ctype})", expand=False)
    table.add_column("#", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Section")
    table.add_column("Preview")
    for chunk in result.chunks:
        preview = " ".join(chunk.core.split())[:_PREVIEW_CHARS]
        marker = " [dim](dup)[/]" if chunk.is_duplicate else ""
        table.add_row(
            str(chunk.index),
            str(chunk.core_tokens),
            escape(chunk.section or ""),
            escape(preview) + marker,
        )
    console.print(table)
    console.print(
        f"[green]✓[/] {len(result.chunks)} chunk(s)  |  {result.total_tokens} tokens  |  "
        f"{result.duplicates_found} duplicate(s)  |  coverage {result.compression_ratio:.2f}"
    )
