"""Incremental session indexer."""

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from code_session_memory.chunker import ChunkOptions, chunk_markdown
from code_session_memory.embeddings import Embedder
from code_session_memory.ledger import SessionLedger, now_ms
from code_session_memory.models import IndexResult, Message, Passage, SessionInfo, SessionMeta
from code_session_memory.renderer import render_message
from code_session_memory.storage import (
    delete_session_chunks,
    ensure_index_exists,
    insert_chunks,
    set_metadata,
)

logger = logging.getLogger(__name__)


def message_url(session_id: str, message_id: str) -> str:
    return f"session://{session_id}#{message_id}"


def select_new_messages(
    conn: sqlite3.Connection,
    session_id: str,
    messages: list[Message],
    meta: SessionMeta | None,
) -> list[Message]:
    """Return the messages after the ledger cursor.

    When the cursor id is missing from the input (the producing tool changed
    its id scheme, or history was rewritten) the session's stored passages are
    purged and every message is treated as new.
    """
    last_id = meta.last_indexed_message_id if meta else None
    if last_id is None:
        return messages

    for position, msg in enumerate(messages):
        if msg.id == last_id:
            return messages[position + 1 :]

    removed = delete_session_chunks(conn, session_id)
    logger.warning(
        "Cursor %s not found in session %s; purged %d passages and re-indexing %d messages",
        last_id,
        session_id,
        removed,
        len(messages),
    )
    return messages


def index_new_messages(
    conn: sqlite3.Connection,
    session: SessionInfo,
    messages: list[Message],
    source: str = "opencode",
    embedder: Embedder | None = None,
    ledger: SessionLedger | None = None,
) -> IndexResult:
    """Index the messages that follow the session's ledger cursor.

    All new messages are rendered and chunked first, then embedded in a single
    batch, then written one message at a time. The ledger only advances after
    every write succeeds, so a failed run can simply be retried.

    Args:
        conn: Open index connection; the caller owns its lifecycle.
        session: Session id, title and project directory.
        messages: Every message of the session in logical order.
        source: Which tool produced the session.
        embedder: Embedding client; defaults to the sentence-transformers model.
        ledger: Ledger to read and advance; defaults to the one in ``conn``.

    Returns:
        IndexResult with the number of new messages indexed and skipped.
    """
    if not messages:
        return IndexResult(0, 0)

    ledger = ledger or SessionLedger(conn)
    session_id = session.id
    session_title = session.title or session_id
    project = session.directory or ""

    new_messages = select_new_messages(conn, session_id, messages, ledger.get(session_id))
    if not new_messages:
        return IndexResult(indexed=0, skipped=len(messages))

    indexed_at = now_ms()
    first_order = len(messages) - len(new_messages)

    # Render + chunk everything before the embedding call
    per_message: list[list[Passage]] = []
    texts: list[str] = []
    for offset, msg in enumerate(new_messages):
        markdown = render_message(msg)
        if not markdown.strip():
            per_message.append([])
            continue

        passages = chunk_markdown(
            markdown,
            ChunkOptions(
                session_id=session_id,
                session_title=session_title,
                project=project,
                base_url=message_url(session_id, msg.id),
            ),
        )
        for passage in passages:
            passage.created_at = indexed_at
            passage.message_order = first_order + offset
            passage.source = source

        per_message.append(passages)
        texts.extend(p.content for p in passages)

    embeddings = (embedder or Embedder()).embed_batch(texts) if texts else []
    if len(embeddings) != len(texts):
        raise ValueError(f"Expected {len(texts)} embeddings, got {len(embeddings)}")

    offset = 0
    for passages in per_message:
        if not passages:
            continue
        insert_chunks(conn, passages, embeddings[offset : offset + len(passages)])
        offset += len(passages)

    ledger.upsert(
        SessionMeta(
            session_id=session_id,
            session_title=session_title,
            project=project,
            source=source,
            last_indexed_message_id=new_messages[-1].id,
            updated_at=now_ms(),
        )
    )
    set_metadata(conn, "last_indexed", datetime.now(tz=timezone.utc).isoformat())
    # Make the new rows visible to readers on other connections
    conn.execute("PRAGMA wal_checkpoint(PASSIVE)")

    logger.info(
        "Indexed %d new messages (%d passages) for session %s",
        len(new_messages),
        len(texts),
        session_id,
    )
    return IndexResult(indexed=len(new_messages), skipped=len(messages) - len(new_messages))


def index_new_messages_with_options(
    session: SessionInfo,
    messages: list[Message],
    source: str = "opencode",
    db_path: str | Path | None = None,
    embedder: Embedder | None = None,
) -> IndexResult:
    """Open a connection, index new messages, and close it again."""
    if not messages:
        return IndexResult(0, 0)

    embedder = embedder or Embedder()
    conn = ensure_index_exists(db_path, embedder.embedding_dim)
    try:
        return index_new_messages(conn, session, messages, source, embedder)
    finally:
        conn.close()


def reindex_session(
    session: SessionInfo,
    messages: list[Message],
    source: str | None = None,
    db_path: str | Path | None = None,
    embedder: Embedder | None = None,
) -> IndexResult:
    """Re-index every message of a session from scratch.

    The cursor is cleared and the session's passages are removed first, so the
    stored passages end up exactly those of a fresh index.
    """
    embedder = embedder or Embedder()
    conn = ensure_index_exists(db_path, embedder.embedding_dim)
    try:
        ledger = SessionLedger(conn)
        existing = ledger.get(session.id)
        source = source or (existing.source if existing else "opencode")

        delete_session_chunks(conn, session.id)
        ledger.reset(
            session_id=session.id,
            session_title=session.title or session.id,
            project=session.directory or "",
            source=source,
        )
        return index_new_messages(conn, session, messages, source, embedder, ledger)
    finally:
        conn.close()
