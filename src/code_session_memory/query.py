"""Read-only query entry points over the session index."""

import logging
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path

from code_session_memory.embeddings import Embedder
from code_session_memory.models import Passage, SearchResult
from code_session_memory.storage import (
    MAX_KNN_LIMIT,
    check_embedding_dim,
    get_chunks_by_url,
    get_connection,
    query_by_embedding,
    resolve_db_path,
)

logger = logging.getLogger(__name__)

DAY_MS = 86400 * 1000


def parse_date(value: str | None, boundary: str = "start") -> int | None:
    """Parse a date into unix milliseconds.

    Supports:
    - Relative: "2h", "7d", "1w", "1m", "1y" (counted back from now)
    - Absolute: "2024-01-01", "2024-01-01T12:00:00"

    A date-only value with ``boundary="end"`` means the end of that UTC day.
    Returns None when the value cannot be parsed.
    """
    if value is None:
        return None

    value = value.strip()
    match = re.match(r"^(\d+)([hdwmy])$", value.lower())
    if match:
        amount = int(match.group(1))
        delta = {
            "h": timedelta(hours=amount),
            "d": timedelta(days=amount),
            "w": timedelta(weeks=amount),
            "m": timedelta(days=amount * 30),  # Approximate
            "y": timedelta(days=amount * 365),  # Approximate
        }[match.group(2)]
        return int((datetime.now(tz=timezone.utc) - delta).timestamp() * 1000)

    date_only = re.match(r"^\d{4}-\d{2}-\d{2}$", value) is not None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    # If naive, assume UTC
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)

    ms = int(dt.timestamp() * 1000)
    if date_only and boundary == "end":
        return ms + DAY_MS - 1
    return ms


def _require_db(db_path: str | Path | None) -> Path:
    path = resolve_db_path(db_path)
    if not path.exists():
        raise FileNotFoundError(
            f'Database not found at {path}. Run "code-session-memory index" first.'
        )
    return path


def query_sessions(
    query_text: str,
    project: str | None = None,
    source: str | None = None,
    from_time: int | None = None,
    to_time: int | None = None,
    limit: int = 5,
    db_path: str | Path | None = None,
    embedder: Embedder | None = None,
) -> list[SearchResult]:
    """Semantic search over indexed passages, closest first."""
    if not query_text.strip():
        raise ValueError("Query text is required")
    if not 1 <= limit <= MAX_KNN_LIMIT:
        raise ValueError(f"limit must be between 1 and {MAX_KNN_LIMIT}")

    path = _require_db(db_path)
    logger.debug("query_sessions text=%r project=%r source=%r limit=%d", query_text, project, source, limit)

    embedder = embedder or Embedder()
    embedding = embedder.embed_text(query_text)

    conn = get_connection(path)
    try:
        check_embedding_dim(conn, len(embedding))
        return query_by_embedding(conn, embedding, limit, project, source, from_time, to_time)
    finally:
        conn.close()


def get_session_chunks(
    url: str,
    start_index: int | None = None,
    end_index: int | None = None,
    db_path: str | Path | None = None,
) -> list[Passage]:
    """Fetch the ordered passages of one message url."""
    path = _require_db(db_path)
    conn = get_connection(path)
    try:
        return get_chunks_by_url(conn, url, start_index, end_index)
    finally:
        conn.close()


def format_query_results(results: list[SearchResult], query_text: str, project: str | None = None) -> str:
    """Format search results as plain text for tool output."""
    if not results:
        where = f' in project "{project}"' if project else ""
        return f'No sessions found matching "{query_text}"{where}.'

    blocks = []
    for i, result in enumerate(results, 1):
        p = result.passage
        lines = [
            f"Result {i}:",
            f"  Content: {p.content}",
            f"  Distance: {result.distance:.4f}",
            f"  URL: {p.url}",
        ]
        if p.section:
            lines.append(f"  Section: {p.section}")
        lines.append(f"  Chunk: {p.chunk_index + 1} of {p.total_chunks}")
        lines.append("---")
        blocks.append("\n".join(lines))

    return f'Found {len(results)} result(s) for "{query_text}":\n\n' + "\n".join(blocks)


def format_chunks(passages: list[Passage], url: str) -> str:
    """Format retrieved passages as plain text for tool output."""
    if not passages:
        return f'No chunks found for "{url}".'

    blocks = []
    for p in passages:
        lines = [f"Chunk {p.chunk_index + 1} of {p.total_chunks}", f"  Content: {p.content}"]
        if p.section:
            lines.append(f"  Section: {p.section}")
        lines.append("---")
        blocks.append("\n".join(lines))

    return f'Retrieved {len(passages)} chunk(s) for "{url}":\n\n' + "\n".join(blocks)
