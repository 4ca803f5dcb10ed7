"""codevault rich error messages: actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from codevault.cli.errors import err_no_api_key, err_no_db
    console.print(err_no_api_key("openai"))
    raise typer.Exit(1)
"""

from __future__ import annotations


def err_no_api_key(provider: str) -> str:
    """No API key for *provider*.

    Example:
        No API key for 'openai'. Set:  export OPENAI_API_KEY=sk-...
    """
    env_map = {
        "openai": "OPENAI_API_KEY",
        "azure": "AZURE_API_KEY",
        "cohere": "COHERE_API_KEY",
        "gemini": "GEMINI_API_KEY",
        "mistral": "MISTRAL_API_KEY",
        "voyage": "VOYAGE_API_KEY",
    }
    env_var = env_map.get(provider.lower(), f"{provider.upper()}_API_KEY")
    return (
        f"[red]Error:[/] No API key for '{provider}'.\n"
        f"  Set:  export {env_var}=sk-..."
    )


def err_no_db(db_path: str = ".codevault.db") -> str:
    """No index database at *db_path*."""
    return (
        f"[red]Error:[/] No index found at '{db_path}'.\n"
        "  Run:  codevault ingest <directory>"
    )


def err_path_not_found(path: str) -> str:
    return (
        f"[red]Error:[/] Path not found: '{path}'\n"
        "  Check the path, or pass --root when ingesting a single file."
    )


def err_not_under_root(path: str, root: str) -> str:
    """Ingested path is outside the project root used for relative paths."""
    return (
        f"[red]Error:[/] '{path}' is not inside the project root '{root}'.\n"
        "  Pass --root with a directory that contains the path."
    )


def err_config(message: str) -> str:
    return (
        f"[red]Error:[/] Invalid configuration.\n"
        f"  {message}\n"
        "  Fix codevault.yaml (or ~/.codevault/config.yaml) and retry."
    )


def err_query_failed(message: str) -> str:
    """Query could not be embedded."""
    return (
        f"[red]Error:[/] Query failed: {message}\n"
        "  Check your network connection and provider quota, then retry."
    )


def err_nothing_to_remove() -> str:
    return (
        "[red]Error:[/] Nothing selected for removal.\n"
        "  Use --path <relative path> (repeatable) or --all."
    )


def warn_no_embeddings(model: str) -> str:
    """Index holds no vectors for the configured model."""
    return (
        f"[yellow]No embeddings found for model '{model}'.[/]\n"
        "  Run:  codevault ingest <directory>  (or set embedding.model to the model used at ingest)"
    )


def warn_partial_ingest(count: int) -> str:
    """Some chunks could not be embedded."""
    return (
        f"[yellow]⚠[/] {count} chunk(s) could not be embedded.\n"
        "  Affected files are marked 'partial' and will be retried on the next run."
    )


def warn_pending_staging(count: int) -> str:
    """Staging buffer holds uncommitted vectors."""
    return (
        f"[yellow]⚠[/] {count} embedding(s) waiting in the staging buffer.\n"
        "  Run:  codevault flush"
    )
