"""SQLiteStore: conversation/message storage using stdlib sqlite3."""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path

from ..core.store import ConversationStore
from ..types import ConversationHandle, PersistenceError, StoredMessage, TokenUsage, TurnRecord

SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS conversations (
    local_id TEXT PRIMARY KEY,
    upstream_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    local_id TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL DEFAULT '',
    usage_json TEXT,
    upstream_message_id TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (local_id) REFERENCES conversations(local_id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_messages_local_id ON messages(local_id, id);
"""


def dt_to_str(dt: datetime) -> str:
    return dt.isoformat()


def str_to_dt(s: str) -> datetime:
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _row_to_handle(row: sqlite3.Row) -> ConversationHandle:
    return ConversationHandle(
        local_id=row["local_id"],
        upstream_id=row["upstream_id"],
        created_at=str_to_dt(row["created_at"]),
        updated_at=str_to_dt(row["updated_at"]),
    )


def _row_to_message(row: sqlite3.Row) -> StoredMessage:
    usage = None
    if row["usage_json"]:
        usage = TokenUsage(**json.loads(row["usage_json"]))
    return StoredMessage(
        id=row["id"],
        local_id=row["local_id"],
        role=row["role"],
        content=row["content"],
        usage=usage,
        upstream_message_id=row["upstream_message_id"],
        created_at=str_to_dt(row["created_at"]),
    )


class SQLiteStore(ConversationStore):
    """SQLite-backed store; upstream id writes are conditional UPDATEs."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()
        self._ensure_schema()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
        return self._conn

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        conn.executescript(SCHEMA_SQL)
        conn.commit()

    @staticmethod
    def _now() -> str:
        return dt_to_str(datetime.now(timezone.utc))

    def _insert_if_missing(self, conn: sqlite3.Connection, local_id: str) -> None:
        now = self._now()
        conn.execute(
            "INSERT OR IGNORE INTO conversations (local_id, upstream_id, created_at, updated_at) "
            "VALUES (?, NULL, ?, ?)",
            (local_id, now, now),
        )

    def get_conversation(self, local_id: str) -> ConversationHandle | None:
        try:
            with self._lock:
                row = self._get_conn().execute(
                    "SELECT * FROM conversations WHERE local_id = ?", (local_id,),
                ).fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to read conversation {local_id}: {e}") from e
        return _row_to_handle(row) if row else None

    def ensure_conversation(self, local_id: str) -> ConversationHandle:
        try:
            with self._lock:
                conn = self._get_conn()
                with conn:
                    self._insert_if_missing(conn, local_id)
                row = conn.execute(
                    "SELECT * FROM conversations WHERE local_id = ?", (local_id,),
                ).fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to create conversation {local_id}: {e}") from e
        return _row_to_handle(row)

    def assign_upstream_id(self, local_id: str, upstream_id: str) -> str:
        try:
            with self._lock:
                conn = self._get_conn()
                with conn:
                    self._insert_if_missing(conn, local_id)
                    conn.execute(
                        "UPDATE conversations SET upstream_id = ?, updated_at = ? "
                        "WHERE local_id = ? AND upstream_id IS NULL",
                        (upstream_id, self._now(), local_id),
                    )
                row = conn.execute(
                    "SELECT upstream_id FROM conversations WHERE local_id = ?", (local_id,),
                ).fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to link {local_id} to {upstream_id}: {e}") from e
        return row["upstream_id"]

    def clear_upstream_id(self, local_id: str, expected: str | None = None) -> bool:
        try:
            with self._lock:
                conn = self._get_conn()
                with conn:
                    if expected is None:
                        cur = conn.execute(
                            "UPDATE conversations SET upstream_id = NULL, updated_at = ? "
                            "WHERE local_id = ? AND upstream_id IS NOT NULL",
                            (self._now(), local_id),
                        )
                    else:
                        cur = conn.execute(
                            "UPDATE conversations SET upstream_id = NULL, updated_at = ? "
                            "WHERE local_id = ? AND upstream_id = ?",
                            (self._now(), local_id, expected),
                        )
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to clear upstream id for {local_id}: {e}") from e
        return cur.rowcount > 0

    def append_turn(self, record: TurnRecord) -> None:
        usage_json = json.dumps(record.usage.to_dict()) if record.usage else None
        created = dt_to_str(record.created_at)
        try:
            with self._lock:
                conn = self._get_conn()
                with conn:
                    self._insert_if_missing(conn, record.local_id)
                    conn.execute(
                        "INSERT INTO messages (local_id, role, content, usage_json, upstream_message_id, created_at) "
                        "VALUES (?, 'user', ?, NULL, NULL, ?)",
                        (record.local_id, record.user_message, created),
                    )
                    conn.execute(
                        "INSERT INTO messages (local_id, role, content, usage_json, upstream_message_id, created_at) "
                        "VALUES (?, 'assistant', ?, ?, ?, ?)",
                        (record.local_id, record.assistant_message, usage_json, record.message_id, created),
                    )
                    conn.execute(
                        "UPDATE conversations SET updated_at = ? WHERE local_id = ?",
                        (self._now(), record.local_id),
                    )
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to store turn for {record.local_id}: {e}") from e

    def get_messages(self, local_id: str, limit: int = 50) -> list[StoredMessage]:
        try:
            with self._lock:
                rows = self._get_conn().execute(
                    "SELECT * FROM messages WHERE local_id = ? ORDER BY id DESC LIMIT ?",
                    (local_id, limit),
                ).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to read messages for {local_id}: {e}") from e
        return [_row_to_message(r) for r in reversed(rows)]

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
