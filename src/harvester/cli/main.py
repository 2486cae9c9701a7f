"""Harvester CLI entry point."""

from __future__ import annotations

import importlib.metadata
from typing import Annotated

import typer

from harvester.cli.common import set_log_level_override
from harvester.cli.crawl import crawl_cmd, recrawl_cmd
from harvester.cli.ingest import chunk_cmd, embed_cmd
from harvester.cli.maintenance import emergency_reset_cmd, health_cmd, recover_cmd
from harvester.cli.sources import cancel_cmd, remove_cmd, restore_cmd
from harvester.cli.status import events_cmd, status_cmd
from harvester.cli.work import orchestrate_cmd, work_cmd


def _installed_version() -> str:
    try:
        return importlib.metadata.version("harvester")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"harvester {_installed_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="harvester",
    help=(
        "Harvester: crawl websites into chunked, embedded training data.\n\n"
        "  harvester crawl URL    Discover pages and queue crawl jobs.\n"
        "  harvester orchestrate  Process the queue with health checks and recovery."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
    log_level: Annotated[
        str | None,
        typer.Option(
            "--log-level",
            help="DEBUG, INFO, WARNING or ERROR (overrides config and HARVESTER_LOG_LEVEL).",
        ),
    ] = None,
) -> None:
    """Harvester: crawl websites into chunked, embedded training data."""
    set_log_level_override(log_level)


app.command("crawl")(crawl_cmd)
app.command("recrawl")(recrawl_cmd)
app.command("work")(work_cmd)
app.command("orchestrate")(orchestrate_cmd)
app.command("health")(health_cmd)
app.command("recover")(recover_cmd)
app.command("emergency-reset")(emergency_reset_cmd)
app.command("status")(status_cmd)
app.command("events")(events_cmd)
app.command("embed")(embed_cmd)
app.command("chunk")(chunk_cmd)
app.command("remove")(remove_cmd)
app.command("restore")(restore_cmd)
app.command("cancel")(cancel_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed Harvester version."""
    typer.echo(f"harvester {_installed_version()}")


if __name__ == "__main__":
    app()
