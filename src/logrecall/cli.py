"""CLI for logrecall."""

import contextlib
import logging
import time
from collections.abc import Iterator
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler

from logrecall import __version__
from logrecall.errors import LockTimeout, LogrecallError, QueryError, SyncCancelled

app = typer.Typer(
    name="logrecall",
    help="Search Claude Code and Codex conversation logs with keyword + semantic search.",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)
log = logging.getLogger("logrecall")

_state: dict[str, Path | None] = {"root": None}


def version_callback(value: bool) -> None:
    if value:
        console.print(f"logrecall {__version__}")
        raise typer.Exit()


def setup_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False, show_time=debug)],
        force=True,
    )
    # Keep model-loading chatter out of the output
    for name in ("sentence_transformers", "transformers", "torch", "huggingface_hub", "filelock"):
        logging.getLogger(name).setLevel(logging.WARNING if debug else logging.ERROR)


@contextlib.contextmanager
def handle_errors() -> Iterator[None]:
    """Turn logrecall errors into a diagnostic and a nonzero exit code."""
    try:
        yield
    except LogrecallError as e:
        err_console.print(f"Error: {e}", style="red", markup=False, soft_wrap=True)
        raise typer.Exit(e.exit_code) from e


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option("--version", callback=version_callback, is_eager=True),
    ] = None,
    root: Annotated[
        Path | None,
        typer.Option("--root", help="Index root (default: $LOGRECALL_HOME or ~/.local/share/logrecall)"),
    ] = None,
    debug: Annotated[bool, typer.Option("--debug", help="Verbose logging")] = False,
) -> None:
    """Search Claude Code and Codex conversation logs."""
    setup_logging(debug)
    _state["root"] = root


@app.command()
def index(
    no_embeddings: Annotated[
        bool, typer.Option("--no-embeddings", help="Index lexically only for this run")
    ] = False,
    rebuild: Annotated[
        bool, typer.Option("--rebuild", help="Delete the index and build it from scratch")
    ] = False,
) -> None:
    """Build or update the search index."""
    from logrecall.config import load_settings
    from logrecall.indexer import sync
    from logrecall.models import SyncStats

    with handle_errors():
        settings = load_settings(_state["root"], embeddings=False if no_embeddings else None)
        stats = SyncStats()
        generation = sync(settings, stats=stats, rebuild=rebuild, show_progress=True)

    if not stats.changed:
        console.print(f"[green]Index is up to date[/green] (generation {generation.id})")
        return
    console.print(
        f"[green]Indexed {stats.records_added} records[/green] from "
        f"{stats.files_new + stats.files_appended + stats.files_reingested} files "
        f"({stats.records_removed} removed, {stats.embedded} embedded) "
        f"→ generation {generation.id}"
    )
    if stats.embed_failed:
        console.print(f"[yellow]{stats.embed_failed} records indexed without embeddings[/yellow]")


@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Search query (may be empty when filtering)")],
    semantic: Annotated[bool, typer.Option("--semantic", help="Embedding similarity only")] = False,
    hybrid: Annotated[bool, typer.Option("--hybrid", help="Blend keyword and semantic scores")] = False,
    relaxed: Annotated[
        bool, typer.Option("--relaxed", help="Exact mode: match any term instead of all")
    ] = False,
    project: Annotated[str | None, typer.Option("--project", "-p", help="Filter by project")] = None,
    role: Annotated[str | None, typer.Option("--role", help="user, assistant, tool_use, tool_result")] = None,
    tool: Annotated[str | None, typer.Option("--tool", help="Filter by tool name")] = None,
    session: Annotated[str | None, typer.Option("--session", help="Filter by session id")] = None,
    source: Annotated[str | None, typer.Option("--source", help="claude or codex")] = None,
    since: Annotated[
        str | None, typer.Option("--since", "-s", help="Start time (e.g., 1w, 30d, 2024-01-01)")
    ] = None,
    until: Annotated[
        str | None, typer.Option("--until", "-u", help="End time (e.g., 1d, 2024-06-30)")
    ] = None,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Number of results")] = 20,
    min_score: Annotated[float | None, typer.Option("--min-score", help="Minimum combined score")] = None,
    sort: Annotated[str, typer.Option("--sort", help="score or ts")] = "score",
    top_n_per_session: Annotated[
        int | None, typer.Option("--top-n-per-session", help="Keep the N best hits per session")
    ] = None,
    unique_session: Annotated[
        bool, typer.Option("--unique-session", help="Keep only the best hit per session")
    ] = False,
    fields: Annotated[
        str | None, typer.Option("--fields", help="Comma-separated output fields")
    ] = None,
    json_array: Annotated[bool, typer.Option("--json-array", help="Output one JSON array")] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Human-readable table")] = False,
    no_index: Annotated[
        bool, typer.Option("--no-index", help="Skip the automatic index update")
    ] = False,
) -> None:
    """Search indexed logs for a query."""
    from logrecall.config import load_settings
    from logrecall.embeddings import SentenceTransformerEmbedder
    from logrecall.indexer import sync
    from logrecall.models import Filters, Mode, QueryOptions, Role, SortOrder, Source
    from logrecall.output import format_results, parse_fields
    from logrecall.searcher import QueryEngine, parse_since
    from logrecall.storage import open_snapshot

    with handle_errors():
        if semantic and hybrid:
            raise QueryError("--semantic and --hybrid cannot be combined")
        mode = Mode.SEMANTIC if semantic else Mode.HYBRID if hybrid else Mode.EXACT

        try:
            options = QueryOptions(
                mode=mode,
                filters=Filters(
                    project=project,
                    role=Role(role) if role else None,
                    tool=tool,
                    session_id=session,
                    source=Source(source) if source else None,
                    since=parse_since(since),
                    until=parse_since(until),
                    min_score=min_score,
                ),
                sort=SortOrder(sort),
                top_n_per_session=top_n_per_session,
                unique_session=unique_session,
                limit=limit,
                relaxed=relaxed,
            )
        except ValueError as e:
            raise QueryError(str(e)) from e
        field_names = parse_fields(fields)

        settings = load_settings(_state["root"])
        embedder = SentenceTransformerEmbedder(settings.model) if settings.embeddings else None

        if settings.auto_index_on_search and not no_index:
            try:
                sync(settings, embedder=embedder, timeout=settings.sync_timeout)
            except (SyncCancelled, LockTimeout) as e:
                log.warning("%s; searching the last committed index", e)

        start_time = time.time()
        with open_snapshot(settings.root) as snapshot:
            engine = QueryEngine(
                snapshot,
                embedder=embedder,
                embeddings_enabled=settings.embeddings,
                lexical_weight=settings.lexical_weight,
                semantic_weight=settings.semantic_weight,
            )
            hits = engine.query(query, options)
        search_time_ms = int((time.time() - start_time) * 1000)

    format_results(
        hits,
        query,
        fields=field_names,
        json_array=json_array,
        verbose=verbose,
        search_time_ms=search_time_ms,
    )


@app.command("session")
def session_cmd(
    session_id: Annotated[str, typer.Argument(help="Session id")],
    json_array: Annotated[bool, typer.Option("--json-array", help="Output one JSON array")] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Human-readable transcript")] = False,
) -> None:
    """Replay a full session in log order."""
    from logrecall.config import load_settings
    from logrecall.output import format_transcript
    from logrecall.sessions import SessionStore
    from logrecall.storage import open_snapshot

    with handle_errors():
        settings = load_settings(_state["root"])
        with open_snapshot(settings.root) as snapshot:
            records = SessionStore(snapshot).transcript(session_id)

    format_transcript(records, json_array=json_array, verbose=verbose)


@app.command()
def show(
    doc_id: Annotated[str, typer.Argument(help="Record id (from search results)")],
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Human-readable panel")] = False,
) -> None:
    """Show one record in full."""
    from logrecall.config import load_settings
    from logrecall.output import format_record
    from logrecall.sessions import SessionStore
    from logrecall.storage import open_snapshot

    with handle_errors():
        settings = load_settings(_state["root"])
        with open_snapshot(settings.root) as snapshot:
            record = SessionStore(snapshot).get(doc_id)

    format_record(record, verbose=verbose)


@app.command()
def status() -> None:
    """Show index statistics."""
    from logrecall.config import load_settings
    from logrecall.storage import get_index_stats, index_exists, open_snapshot

    with handle_errors():
        settings = load_settings(_state["root"])
        console.print(f"Index path: {settings.db_path}")
        if not index_exists(settings.root):
            console.print("Records indexed: 0")
            console.print("[yellow]No index found. Run 'logrecall index' first.[/yellow]")
            return
        with open_snapshot(settings.root) as snapshot:
            stats = get_index_stats(snapshot.conn)
            size = snapshot.size_human()

    console.print(f"Generation: {stats['generation']}")
    console.print(f"Records indexed: {stats['record_count']}")
    console.print(f"Sessions indexed: {stats['session_count']}")
    console.print(f"Files tracked: {stats['file_count']}")
    console.print(f"Embeddings: {stats['embedding_count']}")
    for source_name, count in stats["by_source"].items():
        console.print(f"  [cyan]{source_name}[/cyan]: {count} records")
    console.print(f"Index size: {size}")
    if stats["last_indexed"]:
        console.print(f"Last indexed: {stats['last_indexed']}")


if __name__ == "__main__":
    app()
