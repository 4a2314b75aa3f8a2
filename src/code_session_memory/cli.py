"""CLI for code-session-memory."""

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated, NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from code_session_memory import __version__
from code_session_memory.models import SESSION_SOURCES

app = typer.Typer(
    name="code-session-memory",
    help="Index coding assistant sessions and search them semantically.",
    no_args_is_help=True,
)
sessions_app = typer.Typer(help="Inspect and delete indexed sessions.", no_args_is_help=True)
app.add_typer(sessions_app, name="sessions")

console = Console()
logger = logging.getLogger("code_session_memory")

DbOption = Annotated[
    Path | None, typer.Option("--db", help="Database path (default: $CODE_SESSION_MEMORY_DB_PATH)")
]


def version_callback(value: bool) -> None:
    if value:
        console.print(f"code-session-memory {__version__}")
        raise typer.Exit()


def setup_logging(verbose: bool) -> None:
    handler = RichHandler(console=Console(stderr=True), show_path=False)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[handler],
    )


def fail(message: str) -> NoReturn:
    console.print(f"[red]Error: {escape(message)}[/red]")
    raise typer.Exit(1)


def check_source(source: str | None) -> None:
    if source is not None and source not in SESSION_SOURCES:
        fail(f"Invalid source {source!r}. Must be one of: {', '.join(SESSION_SOURCES)}")


def fmt_date(unix_ms: int) -> str:
    if not unix_ms:
        return "unknown date"
    return datetime.fromtimestamp(unix_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option("--version", "-V", callback=version_callback, is_eager=True),
    ] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
) -> None:
    """Searchable memory for AI coding assistant sessions."""
    setup_logging(verbose)


def _load_session(session_id: str, messages_path: Path, title: str | None, project: str | None, db: Path | None):
    from code_session_memory.models import SessionInfo, derive_session_title, load_messages
    from code_session_memory.storage import ensure_index_exists, get_session_meta

    try:
        messages = load_messages(messages_path)
    except (OSError, ValueError) as e:
        fail(f"Could not read messages from {messages_path}: {e}")

    if title is None:
        conn = ensure_index_exists(db)
        try:
            existing = get_session_meta(conn, session_id)
        finally:
            conn.close()
        title = existing.session_title if existing and existing.session_title else None
    session = SessionInfo(
        id=session_id,
        title=title or derive_session_title(messages),
        directory=project or "",
    )
    return session, messages


@app.command()
def index(
    session_id: Annotated[str, typer.Argument(help="Session ID")],
    messages_path: Annotated[Path, typer.Argument(help="JSON file of normalized messages")],
    title: Annotated[str | None, typer.Option("--title", help="Session title")] = None,
    project: Annotated[str | None, typer.Option("--project", "-p", help="Project directory")] = None,
    source: Annotated[str, typer.Option("--source", "-s", help="Tool that produced the session")] = "opencode",
    db: DbOption = None,
) -> None:
    """Index the new messages of a session."""
    check_source(source)

    from code_session_memory.embeddings import EmbeddingError
    from code_session_memory.indexer import index_new_messages_with_options

    session, messages = _load_session(session_id, messages_path, title, project, db)
    try:
        result = index_new_messages_with_options(session, messages, source, db_path=db)
    except (EmbeddingError, ValueError, sqlite3.Error) as e:
        logger.error("Indexing failed for session %s: %s", session_id, e)
        raise typer.Exit(1)

    console.print(f"[green]Indexed {result.indexed} messages[/green], skipped {result.skipped}")


@app.command()
def reindex(
    session_id: Annotated[str, typer.Argument(help="Session ID")],
    messages_path: Annotated[Path, typer.Argument(help="JSON file of normalized messages")],
    title: Annotated[str | None, typer.Option("--title", help="Session title")] = None,
    project: Annotated[str | None, typer.Option("--project", "-p", help="Project directory")] = None,
    source: Annotated[
        str | None, typer.Option("--source", "-s", help="Tool that produced the session")
    ] = None,
    db: DbOption = None,
) -> None:
    """Re-index every message of a session from scratch."""
    check_source(source)

    from code_session_memory.embeddings import EmbeddingError
    from code_session_memory.indexer import reindex_session

    session, messages = _load_session(session_id, messages_path, title, project, db)
    try:
        result = reindex_session(session, messages, source, db_path=db)
    except (EmbeddingError, ValueError, sqlite3.Error) as e:
        logger.error("Re-indexing failed for session %s: %s", session_id, e)
        raise typer.Exit(1)

    console.print(f"[green]Re-indexed {result.indexed} messages[/green]")


@app.command()
def query(
    text: Annotated[str, typer.Argument(help="Search query")],
    project: Annotated[str | None, typer.Option("--project", "-p", help="Exact project filter")] = None,
    source: Annotated[str | None, typer.Option("--source", "-s", help="Source tool filter")] = None,
    from_date: Annotated[
        str | None, typer.Option("--from", help="Start date (e.g., 2024-01-01, 7d)")
    ] = None,
    to_date: Annotated[str | None, typer.Option("--to", help="End date (e.g., 2024-06-30)")] = None,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Number of results", min=1, max=4096)] = 5,
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON")] = False,
    db: DbOption = None,
) -> None:
    """Semantic search over indexed sessions."""
    if not text.strip():
        fail("Query required")
    check_source(source)

    from code_session_memory.query import parse_date, query_sessions

    from_ms = parse_date(from_date, "start")
    if from_date is not None and from_ms is None:
        fail(f"Invalid --from date {from_date!r}. Use ISO format: 2024-01-01")
    to_ms = parse_date(to_date, "end")
    if to_date is not None and to_ms is None:
        fail(f"Invalid --to date {to_date!r}. Use ISO format: 2024-06-30")

    try:
        results = query_sessions(text, project, source, from_ms, to_ms, limit, db_path=db)
    except (FileNotFoundError, ValueError) as e:
        fail(str(e))

    if json_output:
        console.print_json(
            data={
                "query": text,
                "total_results": len(results),
                "results": [
                    {
                        "rank": i + 1,
                        "distance": round(r.distance, 4),
                        "chunk_id": r.passage.chunk_id,
                        "session_id": r.passage.session_id,
                        "session_title": r.passage.session_title,
                        "project": r.passage.project,
                        "source": r.passage.source,
                        "url": r.passage.url,
                        "section": r.passage.section,
                        "chunk_index": r.passage.chunk_index,
                        "total_chunks": r.passage.total_chunks,
                        "created_at": r.passage.created_at,
                        "content": r.passage.content,
                    }
                    for i, r in enumerate(results)
                ],
            }
        )
        return

    if not results:
        console.print(f'[yellow]No results found for "{escape(text)}".[/yellow]')
        return

    console.print(f'\n[bold]Found {len(results)} result(s)[/bold] for [bold]"{escape(text)}"[/bold]\n')
    for i, r in enumerate(results, 1):
        p = r.passage
        title = escape(p.session_title) if p.session_title else "[dim](untitled)[/dim]"
        console.print(f"[yellow]{i}.[/yellow] [dim]\\[{r.distance:.4f}][/dim] [bold]{title}[/bold] [dim]({p.source})[/dim]")
        if p.section:
            console.print(f"   [dim]Section:[/dim] {escape(p.section)}")
        console.print(f"   [dim]Chunk {p.chunk_index + 1}/{p.total_chunks} -[/dim] [cyan]{escape(p.url)}[/cyan]")
        content = p.content.strip()
        if len(content) > 400:
            content = content[:400] + "…"
        console.print("\n".join(f"   {line}" for line in content.split("\n")), markup=False)
        console.print("   " + "─" * 60, style="dim")


@app.command()
def chunks(
    url: Annotated[str, typer.Argument(help="Message URL (session://<session>#<message>)")],
    start: Annotated[int | None, typer.Option("--start", help="First chunk index")] = None,
    end: Annotated[int | None, typer.Option("--end", help="Last chunk index (inclusive)")] = None,
    db: DbOption = None,
) -> None:
    """Print the stored chunks of one message."""
    from code_session_memory.query import format_chunks, get_session_chunks

    try:
        passages = get_session_chunks(url, start, end, db_path=db)
    except FileNotFoundError as e:
        fail(str(e))
    console.print(format_chunks(passages, url), markup=False)


@app.command()
def status(db: DbOption = None) -> None:
    """Show index statistics."""
    from code_session_memory.storage import get_index_stats

    stats = get_index_stats(db)
    console.print(f"Sessions indexed: {stats['session_count']}")
    console.print(f"Chunks indexed: {stats['chunk_count']}")
    console.print(f"Index path: {stats['index_path']}")
    if stats["last_indexed"]:
        console.print(f"Last indexed: {stats['last_indexed']}")
    for source, count in stats["sources"].items():
        console.print(f"  [cyan]{source}[/cyan]: {count} sessions")


@sessions_app.command("list")
def sessions_list(
    source: Annotated[str | None, typer.Option("--source", "-s", help="Source tool filter")] = None,
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON")] = False,
    db: DbOption = None,
) -> None:
    """List indexed sessions, most recent first."""
    check_source(source)
    from code_session_memory.storage import ensure_index_exists, list_sessions

    conn = ensure_index_exists(db)
    try:
        rows = list_sessions(conn, source=source)
    finally:
        conn.close()

    if json_output:
        console.print_json(
            data={
                "sessions": [
                    {
                        "session_id": s.meta.session_id,
                        "session_title": s.meta.session_title,
                        "project": s.meta.project,
                        "source": s.meta.source,
                        "updated_at": s.meta.updated_at,
                        "chunk_count": s.chunk_count,
                    }
                    for s in rows
                ]
            }
        )
        return

    if not rows:
        console.print("[yellow]No sessions indexed.[/yellow]")
        return

    for s in rows:
        title = escape(s.meta.session_title) or "[dim](untitled)[/dim]"
        console.print(
            f"{fmt_date(s.meta.updated_at)}  [cyan]{s.meta.source}[/cyan]  {title}  "
            f"[dim]{s.chunk_count} chunks  {escape(s.meta.session_id)}[/dim]"
        )


@sessions_app.command("print")
def sessions_print(
    session_id: Annotated[str, typer.Argument(help="Session ID")],
    db: DbOption = None,
) -> None:
    """Print all chunks of a session in conversation order."""
    from code_session_memory.storage import ensure_index_exists, get_session_chunks_ordered

    conn = ensure_index_exists(db)
    try:
        passages = get_session_chunks_ordered(conn, session_id)
    finally:
        conn.close()

    if not passages:
        fail(f"No session found with ID: {session_id}")

    console.print(f"[bold]{escape(passages[0].session_title)}[/bold]")
    console.print(f"[dim]{escape(passages[0].project)}  {passages[0].source}[/dim]\n")
    for p in passages:
        console.print(p.content, markup=False)
        console.print("─" * 72, style="dim")


@sessions_app.command("delete")
def sessions_delete(
    session_id: Annotated[str, typer.Argument(help="Session ID")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation")] = False,
    db: DbOption = None,
) -> None:
    """Delete a session from the index."""
    from code_session_memory.storage import delete_session, ensure_index_exists, get_session_meta

    conn = ensure_index_exists(db)
    try:
        if get_session_meta(conn, session_id) is None:
            fail(f"No session found with ID: {session_id}")
        if not yes and not typer.confirm(f"Delete session {session_id}?", default=False):
            console.print("Deletion cancelled - database was not modified.")
            return
        deleted = delete_session(conn, session_id)
    finally:
        conn.close()

    console.print(f"[green]Deleted {deleted} chunks.[/green]")
    console.print(
        "[yellow]Note: if this session's source files still exist, "
        "it will be re-indexed on the next agent turn.[/yellow]"
    )


@sessions_app.command("purge")
def sessions_purge(
    days: Annotated[int, typer.Option("--days", "-d", help="Delete sessions older than N days", min=1)],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation")] = False,
    db: DbOption = None,
) -> None:
    """Delete all sessions older than N days."""
    from code_session_memory.ledger import now_ms
    from code_session_memory.query import DAY_MS
    from code_session_memory.storage import delete_sessions_older_than, ensure_index_exists, list_sessions

    cutoff = now_ms() - days * DAY_MS
    conn = ensure_index_exists(db)
    try:
        candidates = list_sessions(conn, to_time=cutoff)
        if not candidates:
            console.print(f"No sessions older than {days} day(s) found.")
            return

        total_chunks = sum(s.chunk_count for s in candidates)
        summary = f"{len(candidates)} session(s) ({total_chunks} chunks) older than {days} day(s)"
        if not yes and not typer.confirm(f"Permanently delete {summary}?", default=False):
            console.print("Purge cancelled - database was not modified.")
            return

        sessions, removed = delete_sessions_older_than(conn, cutoff)
    finally:
        conn.close()

    console.print(f"[green]Deleted {sessions} sessions ({removed} chunks).[/green]")


if __name__ == "__main__":
    app()
