"""SQLite + sqlite-vec storage for indexed session passages."""

import json
import logging
import os
import sqlite3
from pathlib import Path
from typing import Any

import sqlite_vec

from code_session_memory.embeddings import EMBEDDING_DIM
from code_session_memory.models import Passage, SearchResult, SessionMeta, SessionSummary

logger = logging.getLogger(__name__)

# Index location
DB_PATH_ENV = "CODE_SESSION_MEMORY_DB_PATH"
INDEX_DIR = Path.home() / ".local" / "share" / "code-session-memory"
INDEX_PATH = INDEX_DIR / "sessions.db"

# sqlite-vec rejects larger k in a KNN query
MAX_KNN_LIMIT = 4096


def resolve_db_path(override: str | Path | None = None) -> Path:
    """Resolve the DB path: explicit override, then env var, then default."""
    if override:
        return Path(override).expanduser()
    env_path = os.environ.get(DB_PATH_ENV)
    if env_path:
        return Path(env_path).expanduser()
    return INDEX_PATH


def get_connection(db_path: str | Path | None = None) -> sqlite3.Connection:
    """Get a connection to the index database with sqlite-vec loaded."""
    path = resolve_db_path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.row_factory = sqlite3.Row
    conn.enable_load_extension(True)
    sqlite_vec.load(conn)
    conn.enable_load_extension(False)
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA synchronous = NORMAL")
    return conn


def init_schema(conn: sqlite3.Connection, embedding_dim: int | None = None) -> None:
    """Initialize the database schema.

    The vector table is sized for ``embedding_dim`` (EMBEDDING_DIM when None)
    on first creation, and the size is recorded in ``metadata``. Passing a
    dimension that differs from the recorded one raises ValueError.
    """
    conn.executescript("""
        -- Passage rows
        CREATE TABLE IF NOT EXISTS chunks (
            chunk_id TEXT PRIMARY KEY,
            session_id TEXT NOT NULL,
            session_title TEXT NOT NULL DEFAULT '',
            project TEXT NOT NULL DEFAULT '',
            source TEXT NOT NULL DEFAULT '',
            heading_hierarchy TEXT NOT NULL,  -- JSON array
            section TEXT NOT NULL DEFAULT '',
            content TEXT NOT NULL,
            url TEXT NOT NULL,
            hash TEXT NOT NULL,
            chunk_index INTEGER NOT NULL,
            total_chunks INTEGER NOT NULL,
            message_order INTEGER,
            created_at INTEGER NOT NULL DEFAULT 0
        );

        CREATE INDEX IF NOT EXISTS idx_chunks_session_id ON chunks(session_id);
        CREATE INDEX IF NOT EXISTS idx_chunks_url ON chunks(url, chunk_index);

        -- Per-session indexing progress
        CREATE TABLE IF NOT EXISTS sessions_meta (
            session_id TEXT PRIMARY KEY,
            session_title TEXT NOT NULL DEFAULT '',
            project TEXT NOT NULL DEFAULT '',
            source TEXT NOT NULL DEFAULT 'opencode',
            last_indexed_message_id TEXT,
            updated_at INTEGER NOT NULL DEFAULT 0
        );

        -- Metadata table for tracking index state
        CREATE TABLE IF NOT EXISTS metadata (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );
    """)

    # Filter columns live on the vector table so KNN can apply them
    conn.execute(f"""
        CREATE VIRTUAL TABLE IF NOT EXISTS chunks_vec USING vec0(
            chunk_id TEXT PRIMARY KEY,
            embedding float[{embedding_dim or EMBEDDING_DIM}],
            project TEXT,
            source TEXT,
            created_at INTEGER
        );
    """)

    conn.commit()

    if get_metadata(conn, "embedding_dim") is None:
        set_metadata(conn, "embedding_dim", str(embedding_dim or EMBEDDING_DIM))
    if embedding_dim is not None:
        check_embedding_dim(conn, embedding_dim)


def ensure_index_exists(
    db_path: str | Path | None = None, embedding_dim: int | None = None
) -> sqlite3.Connection:
    """Ensure the index database exists and is initialized."""
    conn = get_connection(db_path)
    try:
        init_schema(conn, embedding_dim)
    except ValueError:
        conn.close()
        raise
    return conn


def check_embedding_dim(conn: sqlite3.Connection, embedding_dim: int) -> None:
    """Raise ValueError if the index was built for another embedding size."""
    stored = get_metadata(conn, "embedding_dim")
    if stored is not None and int(stored) != embedding_dim:
        raise ValueError(
            f"Index was built with {stored}-dim embeddings but the model produces "
            f"{embedding_dim}; use another --db or run with the original model"
        )


def index_exists(db_path: str | Path | None = None) -> bool:
    """Check if the index database exists."""
    return resolve_db_path(db_path).exists()


def _row_to_passage(row: sqlite3.Row) -> Passage:
    return Passage(
        content=row["content"],
        session_id=row["session_id"],
        session_title=row["session_title"],
        project=row["project"],
        heading_hierarchy=json.loads(row["heading_hierarchy"]),
        section=row["section"],
        chunk_id=row["chunk_id"],
        url=row["url"],
        hash=row["hash"],
        chunk_index=row["chunk_index"],
        total_chunks=row["total_chunks"],
        message_order=row["message_order"],
        created_at=row["created_at"],
        source=row["source"],
    )


def _row_to_meta(row: sqlite3.Row) -> SessionMeta:
    return SessionMeta(
        session_id=row["session_id"],
        session_title=row["session_title"],
        project=row["project"],
        source=row["source"],
        last_indexed_message_id=row["last_indexed_message_id"],
        updated_at=row["updated_at"],
    )


# ---------------------------------------------------------------------------
# Session meta
# ---------------------------------------------------------------------------


def get_session_meta(conn: sqlite3.Connection, session_id: str) -> SessionMeta | None:
    """Get the ledger row for a session."""
    row = conn.execute(
        "SELECT * FROM sessions_meta WHERE session_id = ?", (session_id,)
    ).fetchone()
    if row is None:
        return None
    return _row_to_meta(row)


def upsert_session_meta(conn: sqlite3.Connection, meta: SessionMeta) -> None:
    """Insert or fully replace the ledger row for a session."""
    with conn:
        conn.execute(
            """
            INSERT OR REPLACE INTO sessions_meta (
                session_id, session_title, project, source,
                last_indexed_message_id, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                meta.session_id,
                meta.session_title,
                meta.project,
                meta.source,
                meta.last_indexed_message_id,
                meta.updated_at,
            ),
        )


# ---------------------------------------------------------------------------
# Passages
# ---------------------------------------------------------------------------


def insert_chunks(
    conn: sqlite3.Connection, passages: list[Passage], embeddings: list[list[float]]
) -> int:
    """Insert passages with their embeddings in one transaction.

    Passages whose chunk_id is already stored are skipped, never overwritten.
    Returns the number of passages actually inserted.
    """
    if len(passages) != len(embeddings):
        raise ValueError(
            f"Mismatch: {len(passages)} chunks but {len(embeddings)} embeddings"
        )
    if not passages:
        return 0

    inserted = 0
    with conn:
        for passage, embedding in zip(passages, embeddings):
            created_at = passage.created_at or 0
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO chunks (
                    chunk_id, session_id, session_title, project, source,
                    heading_hierarchy, section, content, url, hash,
                    chunk_index, total_chunks, message_order, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    passage.chunk_id,
                    passage.session_id,
                    passage.session_title,
                    passage.project,
                    passage.source,
                    json.dumps(passage.heading_hierarchy),
                    passage.section,
                    passage.content,
                    passage.url,
                    passage.hash,
                    passage.chunk_index,
                    passage.total_chunks,
                    passage.message_order,
                    created_at,
                ),
            )
            if cursor.rowcount == 0:
                continue

            conn.execute(
                """
                INSERT INTO chunks_vec (chunk_id, embedding, project, source, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    passage.chunk_id,
                    sqlite_vec.serialize_float32(embedding),
                    passage.project,
                    passage.source,
                    created_at,
                ),
            )
            inserted += 1

    logger.debug("Inserted %d of %d passages", inserted, len(passages))
    return inserted


def query_by_embedding(
    conn: sqlite3.Connection,
    query_embedding: list[float],
    limit: int = 10,
    project: str | None = None,
    source: str | None = None,
    from_time: int | None = None,
    to_time: int | None = None,
) -> list[SearchResult]:
    """Nearest passages to an embedding, closest first.

    Filters are applied inside the KNN search so they never starve the
    result list.
    """
    knn = "SELECT chunk_id, distance FROM chunks_vec WHERE embedding MATCH ? AND k = ?"
    params: list[Any] = [sqlite_vec.serialize_float32(query_embedding), limit]

    if project:
        knn += " AND project = ?"
        params.append(project)
    if source:
        knn += " AND source = ?"
        params.append(source)
    if from_time is not None:
        knn += " AND created_at >= ?"
        params.append(from_time)
    if to_time is not None:
        knn += " AND created_at <= ?"
        params.append(to_time)

    rows = conn.execute(
        f"""
        SELECT c.*, knn.distance AS distance
        FROM ({knn}) AS knn
        JOIN chunks c ON c.chunk_id = knn.chunk_id
        ORDER BY knn.distance
        """,
        params,
    ).fetchall()
    return [SearchResult(passage=_row_to_passage(row), distance=row["distance"]) for row in rows]


def get_chunks_by_url(
    conn: sqlite3.Connection,
    url: str,
    start_index: int | None = None,
    end_index: int | None = None,
) -> list[Passage]:
    """Get the passages of one message, optionally within an inclusive index range."""
    sql = "SELECT * FROM chunks WHERE url = ?"
    params: list[Any] = [url]

    if start_index is not None:
        sql += " AND chunk_index >= ?"
        params.append(start_index)
    if end_index is not None:
        sql += " AND chunk_index <= ?"
        params.append(end_index)

    sql += " ORDER BY chunk_index"
    return [_row_to_passage(row) for row in conn.execute(sql, params).fetchall()]


def list_session_urls(conn: sqlite3.Connection, session_id: str) -> list[str]:
    """List the distinct message urls stored for a session."""
    rows = conn.execute(
        "SELECT DISTINCT url FROM chunks WHERE session_id = ? ORDER BY url", (session_id,)
    ).fetchall()
    return [row["url"] for row in rows]


def get_session_chunks_ordered(conn: sqlite3.Connection, session_id: str) -> list[Passage]:
    """Get all passages for a session in conversation order."""
    rows = conn.execute(
        """
        SELECT * FROM chunks
        WHERE session_id = ?
        ORDER BY message_order, chunk_index
        """,
        (session_id,),
    ).fetchall()
    return [_row_to_passage(row) for row in rows]


def delete_session_chunks(conn: sqlite3.Connection, session_id: str) -> int:
    """Delete all passages for a session, keeping its ledger row."""
    with conn:
        chunk_ids = [
            row[0]
            for row in conn.execute("SELECT chunk_id FROM chunks WHERE session_id = ?", (session_id,))
        ]
        for chunk_id in chunk_ids:
            conn.execute("DELETE FROM chunks_vec WHERE chunk_id = ?", (chunk_id,))
        conn.execute("DELETE FROM chunks WHERE session_id = ?", (session_id,))
    return len(chunk_ids)


def delete_session(conn: sqlite3.Connection, session_id: str) -> int:
    """Delete a session's passages and ledger row. Returns passages removed."""
    removed = delete_session_chunks(conn, session_id)
    with conn:
        conn.execute("DELETE FROM sessions_meta WHERE session_id = ?", (session_id,))
    return removed


def list_sessions(
    conn: sqlite3.Connection,
    source: str | None = None,
    to_time: int | None = None,
) -> list[SessionSummary]:
    """List ledger rows with their passage counts, most recently updated first.

    ``to_time`` keeps only sessions last updated strictly before it.
    """
    sql = """
        SELECT m.*, COUNT(c.chunk_id) AS chunk_count
        FROM sessions_meta m
        LEFT JOIN chunks c ON c.session_id = m.session_id
    """
    conditions: list[str] = []
    params: list[Any] = []

    if source:
        conditions.append("m.source = ?")
        params.append(source)
    if to_time is not None:
        conditions.append("m.updated_at < ?")
        params.append(to_time)

    if conditions:
        sql += " WHERE " + " AND ".join(conditions)
    sql += " GROUP BY m.session_id ORDER BY m.updated_at DESC"

    return [
        SessionSummary(meta=_row_to_meta(row), chunk_count=row["chunk_count"])
        for row in conn.execute(sql, params).fetchall()
    ]


def delete_sessions_older_than(conn: sqlite3.Connection, cutoff: int) -> tuple[int, int]:
    """Delete every session last updated before cutoff (unix ms).

    Returns (sessions removed, passages removed).
    """
    sessions = list_sessions(conn, to_time=cutoff)
    chunks = sum(delete_session(conn, s.meta.session_id) for s in sessions)
    return len(sessions), chunks


def set_metadata(conn: sqlite3.Connection, key: str, value: str) -> None:
    """Set a metadata value."""
    conn.execute(
        "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
        (key, value),
    )
    conn.commit()


def get_metadata(conn: sqlite3.Connection, key: str) -> str | None:
    """Get a metadata value."""
    row = conn.execute("SELECT value FROM metadata WHERE key = ?", (key,)).fetchone()
    return row["value"] if row else None


def get_index_stats(db_path: str | Path | None = None) -> dict[str, Any]:
    """Get index statistics."""
    path = resolve_db_path(db_path)
    if not path.exists():
        return {
            "session_count": 0,
            "chunk_count": 0,
            "index_path": str(path),
            "last_indexed": None,
            "sources": {},
        }

    conn = ensure_index_exists(path)
    try:
        session_count = conn.execute("SELECT COUNT(*) FROM sessions_meta").fetchone()[0]
        chunk_count = conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]
        sources = {
            row["source"]: row["n"]
            for row in conn.execute(
                "SELECT source, COUNT(*) AS n FROM sessions_meta GROUP BY source ORDER BY n DESC"
            )
        }
        last_indexed = get_metadata(conn, "last_indexed")
    finally:
        conn.close()

    return {
        "session_count": session_count,
        "chunk_count": chunk_count,
        "index_path": str(path),
        "last_indexed": last_indexed,
        "sources": sources,
    }
