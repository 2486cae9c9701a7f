"""Harvester rich error messages.

Every error shown to the user states what went wrong and the action that
fixes it.

Usage:
    from harvester.cli.errors import err_no_db
    console.print(err_no_db(".harvester.db"))
    raise typer.Exit(1)
"""

from __future__ import annotations


def err_no_db(db_path: str = ".harvester.db") -> str:
    """No database at *db_path*."""
    return (
        f"[red]Error:[/] No database found at '{db_path}'.\n"
        "  Run:  harvester crawl <URL>  to create one."
    )


def err_source_not_found(source_id: str) -> str:
    """Source id not in the database (or soft-deleted)."""
    return (
        f"[red]Error:[/] Source not found: '{source_id}'.\n"
        "  Run:  harvester status  to list known sources."
    )


def err_invalid_url(url: str, reason: str) -> str:
    """Start URL rejected before anything was queued."""
    return (
        f"[red]Error:[/] Cannot crawl '{url}': {reason}\n"
        "  Use an absolute http(s) URL, e.g.  harvester crawl https://example.com"
    )


def err_no_api_key(provider: str) -> str:
    """No API key for *provider*.

    Example:
        No API key for 'openai'. Set:  export OPENAI_API_KEY=sk-...
    """
    env_map = {
        "openai": "OPENAI_API_KEY",
        "cohere": "COHERE_API_KEY",
        "gemini": "GEMINI_API_KEY",
        "mistral": "MISTRAL_API_KEY",
        "azure": "AZURE_API_KEY",
        "voyage": "VOYAGE_API_KEY",
    }
    env_var = env_map.get(provider.lower(), f"{provider.upper()}_API_KEY")
    return (
        f"[red]Error:[/] No API key for '{provider}'.\n"
        f"  Set:  export {env_var}=sk-..."
    )


def err_config(detail: str) -> str:
    """harvester.yaml or ~/.harvester/config.yaml is invalid."""
    return (
        f"[red]Error:[/] Invalid configuration: {detail}\n"
        "  Fix harvester.yaml (or ~/.harvester/config.yaml) and retry."
    )


def err_storage(detail: str) -> str:
    """Database locked or unreadable."""
    return (
        f"[red]Error:[/] Database unavailable: {detail}\n"
        "  Another process may hold a write lock; retry in a moment."
    )


def err_rejected(detail: str) -> str:
    """Operation refused for the current source state."""
    return f"[red]Error:[/] {detail}"


def err_no_file(path: str) -> str:
    return f"[red]Error:[/] File not found: '{path}'."
