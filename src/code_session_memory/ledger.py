"""Per-session bookmark enabling incremental re-entry."""

import sqlite3
import time

from code_session_memory.models import SessionMeta
from code_session_memory.storage import get_session_meta, upsert_session_meta


def now_ms() -> int:
    return int(time.time() * 1000)


class SessionLedger:
    """Key-value view of the sessions_meta table, keyed by session id.

    Every write replaces the whole row.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def get(self, session_id: str) -> SessionMeta | None:
        return get_session_meta(self.conn, session_id)

    def upsert(self, meta: SessionMeta) -> None:
        upsert_session_meta(self.conn, meta)

    def reset(
        self,
        session_id: str,
        session_title: str,
        project: str,
        source: str,
    ) -> SessionMeta:
        """Clear the cursor so the next run treats every message as new."""
        meta = SessionMeta(
            session_id=session_id,
            session_title=session_title,
            project=project,
            source=source,
            last_indexed_message_id=None,
            updated_at=now_ms(),
        )
        self.upsert(meta)
        return meta
