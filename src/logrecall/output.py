"""Rendering search results and transcripts."""

import json
import re
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from logrecall.errors import QueryError
from logrecall.lexical import query_terms
from logrecall.models import Record, ScoredHit

console = Console()

SNIPPET_CHARS = 160

DEFAULT_FIELDS = ("score", "ts", "doc_id", "session_id", "source", "role", "project", "snippet")


def format_ts(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def make_snippet(text: str, query: str, width: int = SNIPPET_CHARS) -> str:
    """About `width` characters of text around the first query term match."""
    flat = " ".join(text.split())
    if len(flat) <= width:
        return flat

    start = 0
    for term in query_terms(query):
        match = re.search(re.escape(term), flat, re.IGNORECASE)
        if match:
            start = max(0, match.start() - width // 3)
            break
    end = min(len(flat), start + width)
    start = max(0, end - width)
    snippet = flat[start:end]
    if start > 0:
        snippet = "…" + snippet
    if end < len(flat):
        snippet += "…"
    return snippet


FIELD_GETTERS: dict[str, Callable[[ScoredHit, str], Any]] = {
    "score": lambda hit, _: round(hit.combined_score, 6),
    "lexical_score": lambda hit, _: round(hit.lexical_score, 6),
    "semantic_score": lambda hit, _: round(hit.semantic_score, 6),
    "ts": lambda hit, _: format_ts(hit.record.ts),
    "doc_id": lambda hit, _: hit.doc_id,
    "session_id": lambda hit, _: hit.record.session_id,
    "source": lambda hit, _: hit.record.source.value,
    "role": lambda hit, _: hit.record.role.value,
    "project": lambda hit, _: hit.record.project,
    "tool": lambda hit, _: hit.record.tool,
    "path": lambda hit, _: hit.record.path,
    "snippet": lambda hit, query: make_snippet(hit.record.text, query),
    "text": lambda hit, _: hit.record.text,
}


def parse_fields(fields: str | None) -> tuple[str, ...]:
    """Parse a comma-separated --fields value."""
    if not fields:
        return DEFAULT_FIELDS
    names = tuple(name.strip() for name in fields.split(",") if name.strip())
    unknown = [name for name in names if name not in FIELD_GETTERS]
    if unknown:
        raise QueryError(
            f"Unknown field(s): {', '.join(unknown)}. Choose from: {', '.join(FIELD_GETTERS)}"
        )
    if not names:
        raise QueryError("--fields must name at least one field")
    return names


def hit_to_dict(hit: ScoredHit, query: str, fields: tuple[str, ...]) -> dict[str, Any]:
    return {name: FIELD_GETTERS[name](hit, query) for name in fields}


def print_jsonl(rows: list[dict[str, Any]]) -> None:
    for row in rows:
        typer.echo(json.dumps(row, ensure_ascii=False))


def print_json_array(rows: list[dict[str, Any]]) -> None:
    typer.echo(json.dumps(rows, ensure_ascii=False, indent=2))


def format_results(
    hits: list[ScoredHit],
    query: str,
    fields: tuple[str, ...] = DEFAULT_FIELDS,
    json_array: bool = False,
    verbose: bool = False,
    search_time_ms: int | None = None,
) -> None:
    """Write search results in the requested format."""
    if verbose:
        format_table(hits, query, fields, search_time_ms)
        return
    rows = [hit_to_dict(hit, query, fields) for hit in hits]
    if json_array:
        print_json_array(rows)
    else:
        print_jsonl(rows)


def format_table(
    hits: list[ScoredHit], query: str, fields: tuple[str, ...], search_time_ms: int | None = None
) -> None:
    """Format results for human-readable output."""
    if not hits:
        console.print("[yellow]No results found. Try a different query.[/yellow]")
        return

    table = Table(show_lines=False, header_style="bold cyan")
    for name in fields:
        table.add_column(name, overflow="fold", ratio=3 if name in ("snippet", "text") else None)
    for hit in hits:
        row = hit_to_dict(hit, query, fields)
        cells = []
        for name in fields:
            value = row[name]
            if value is None:
                cells.append(Text("-", style="dim"))
            elif name in ("snippet", "text"):
                cells.append(highlight_matches(str(value), query))
            else:
                cells.append(Text(str(value)))
        table.add_row(*cells)
    console.print(table)

    footer = f"Found {len(hits)} results"
    if search_time_ms is not None:
        footer += f" in {search_time_ms}ms"
    console.print(footer, style="dim")


def highlight_matches(text: str, query: str) -> Text:
    """Highlight query terms in text."""
    rendered = Text(text)
    for term in query_terms(query):
        # Skip very short terms to avoid too many highlights
        if len(term) < 3:
            continue
        rendered.highlight_regex(re.compile(re.escape(term), re.IGNORECASE), style="bold yellow")
    return rendered


ROLE_STYLES = {
    "user": "cyan",
    "assistant": "green",
    "tool_use": "magenta",
    "tool_result": "dim",
}


def format_transcript(records: list[Record], json_array: bool = False, verbose: bool = False) -> None:
    """Write a full session in log order."""
    if verbose:
        for record in records:
            title = Text()
            title.append(record.role.value, style=ROLE_STYLES.get(record.role.value, ""))
            if record.tool:
                title.append(f" {record.tool}", style="magenta")
            title.append(f" | {format_ts(record.ts)}", style="dim")
            console.print(
                Panel(
                    Text(record.text),
                    title=title,
                    title_align="left",
                    subtitle=f"→ logrecall show {record.doc_id}",
                    subtitle_align="left",
                )
            )
        return
    rows = [record_to_dict(record) for record in records]
    if json_array:
        print_json_array(rows)
    else:
        print_jsonl(rows)


def record_to_dict(record: Record) -> dict[str, Any]:
    data = record.to_dict()
    data["ts"] = format_ts(record.ts)
    return data


def format_record(record: Record, verbose: bool = False) -> None:
    """Display one record in full."""
    if not verbose:
        typer.echo(json.dumps(record_to_dict(record), ensure_ascii=False))
        return
    header = Text()
    if record.project:
        header.append(f"Project: {record.project} | ", style="green")
    header.append(f"{record.source.value} {record.role.value}", style=ROLE_STYLES.get(record.role.value, ""))
    header.append(f" | {format_ts(record.ts)}", style="dim")
    console.print(
        Panel(
            Text(record.text),
            title=header,
            subtitle=f"→ Session: {record.session_id}",
            subtitle_align="left",
        )
    )
