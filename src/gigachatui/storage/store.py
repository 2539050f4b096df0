"""SQLite-backed session and message store."""

from __future__ import annotations

import logging
import sqlite3
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from gigachatui.types import Message, Role

_logger = logging.getLogger(__name__)


@dataclass
class Session:
    """A named conversation."""
    name: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: float = field(default_factory=time.time)


@dataclass
class MessageRecord:
    """A stored message belonging to a session."""
    session_id: str
    role: Role
    content: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: float = field(default_factory=time.time)

    @classmethod
    def from_message(cls, session_id: str, message: Message) -> MessageRecord:
        return cls(session_id=session_id, role=message.role, content=message.content)

    def to_message(self) -> Message:
        return Message(role=self.role, content=self.content)


class SessionStore:
    """Append-only message log keyed by session id."""

    def __init__(self, db_path: str = "~/.gigachatui/sqlite.db"):
        if db_path == ":memory:":
            self.db_path = None
            self._conn = sqlite3.connect(":memory:")
        else:
            self.db_path = Path(db_path).expanduser()
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.db_path))
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._init_schema()

    def _init_schema(self):
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                created_at REAL NOT NULL
            );
            CREATE TABLE IF NOT EXISTS messages (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT UNIQUE NOT NULL,
                session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                created_at REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_msg_session ON messages(session_id);
        """)
        self._conn.commit()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def write_session(self, session: Session):
        """Insert a session; an existing id is left untouched."""
        self._conn.execute(
            "INSERT OR IGNORE INTO sessions (id, name, created_at) VALUES (?, ?, ?)",
            (session.id, session.name, session.created_at),
        )
        self._conn.commit()
        _logger.debug("Session written: %s (%s)", session.id, session.name)

    def read_sessions(self) -> list[Session]:
        """All sessions, newest first."""
        rows = self._conn.execute(
            "SELECT id, name, created_at FROM sessions ORDER BY created_at DESC",
        ).fetchall()
        return [Session(id=sid, name=name, created_at=ts) for sid, name, ts in rows]

    def get_session(self, session_id: str) -> Session | None:
        row = self._conn.execute(
            "SELECT id, name, created_at FROM sessions WHERE id = ?", (session_id,),
        ).fetchone()
        if row is None:
            return None
        return Session(id=row[0], name=row[1], created_at=row[2])

    def delete_session(self, session_id: str) -> bool:
        """Delete a session and its messages.  Returns False if it didn't exist."""
        cur = self._conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        self._conn.commit()
        return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def write_message(self, record: MessageRecord):
        """Append a message; an existing id is left untouched."""
        self._conn.execute(
            "INSERT OR IGNORE INTO messages (id, session_id, role, content, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (record.id, record.session_id, record.role.value,
             record.content, record.created_at),
        )
        self._conn.commit()

    def read_messages_by_session(self, session_id: str) -> list[MessageRecord]:
        """Messages of a session in the order they were written."""
        rows = self._conn.execute(
            "SELECT id, session_id, role, content, created_at FROM messages "
            "WHERE session_id = ? ORDER BY seq",
            (session_id,),
        ).fetchall()
        return [
            MessageRecord(id=mid, session_id=sid, role=Role(role),
                          content=content, created_at=ts)
            for mid, sid, role, content, ts in rows
        ]

    def delete_message(self, message_id: str) -> bool:
        cur = self._conn.execute("DELETE FROM messages WHERE id = ?", (message_id,))
        self._conn.commit()
        return cur.rowcount > 0

    def close(self):
        self._conn.close()
