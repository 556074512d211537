"""Durable and in-memory transcript stores."""
from __future__ import annotations

import enum
import sqlite3
import threading
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol


class Role(str, enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class TranscriptMessage:
    id: int
    role: Role
    content: str
    created_at: datetime


def utc_now() -> datetime:
    return datetime.now(UTC)


class TranscriptStore(Protocol):
    def append(self, role: Role, content: str) -> TranscriptMessage:
        ...

    def update(self, message_id: int, content: str) -> TranscriptMessage:
        ...

    def delete(self, message_id: int) -> None:
        ...

    def get(self, message_id: int) -> TranscriptMessage | None:
        ...

    def recent(self, limit: int) -> list[TranscriptMessage]:
        """Return the newest *limit* messages, oldest first."""
        ...

    def history(self) -> list[TranscriptMessage]:
        ...

    def count(self) -> int:
        ...

    def clear(self) -> None:
        ...

    def prune(self, keep: int) -> int:
        """Delete the oldest messages so at most *keep* remain; return how many went."""
        ...


class InMemoryTranscriptStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._messages: dict[int, TranscriptMessage] = {}
        self._next_id = 1

    def append(self, role: Role, content: str) -> TranscriptMessage:
        with self._lock:
            message = TranscriptMessage(self._next_id, Role(role), content, utc_now())
            self._messages[message.id] = message
            self._next_id += 1
            return message

    def update(self, message_id: int, content: str) -> TranscriptMessage:
        with self._lock:
            try:
                message = replace(self._messages[message_id], content=content)
            except KeyError:
                raise KeyError(f"Message not found: {message_id}") from None
            self._messages[message_id] = message
            return message

    def delete(self, message_id: int) -> None:
        with self._lock:
            self._messages.pop(message_id, None)

    def get(self, message_id: int) -> TranscriptMessage | None:
        with self._lock:
            return self._messages.get(message_id)

    def recent(self, limit: int) -> list[TranscriptMessage]:
        if limit <= 0:
            return []
        with self._lock:
            ordered = sorted(self._messages.values(), key=lambda m: m.id)
        return ordered[-limit:]

    def history(self) -> list[TranscriptMessage]:
        with self._lock:
            return sorted(self._messages.values(), key=lambda m: m.id)

    def count(self) -> int:
        with self._lock:
            return len(self._messages)

    def clear(self) -> None:
        with self._lock:
            self._messages.clear()

    def prune(self, keep: int) -> int:
        with self._lock:
            ids = sorted(self._messages)
            doomed = ids[: max(0, len(ids) - max(0, keep))]
            for message_id in doomed:
                del self._messages[message_id]
            return len(doomed)


class SqliteTranscriptStore:
    """Thread-safe sqlite3 message log (WAL, single shared connection)."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(self.path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA synchronous = NORMAL")
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS chat_messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                created_at TEXT NOT NULL
            );
            """
        )
        self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> SqliteTranscriptStore:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @staticmethod
    def _row(row: sqlite3.Row) -> TranscriptMessage:
        return TranscriptMessage(
            id=int(row["id"]),
            role=Role(row["role"]),
            content=str(row["content"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def append(self, role: Role, content: str) -> TranscriptMessage:
        created = utc_now()
        role = Role(role)
        with self._lock:
            cur = self._conn.execute(
                "INSERT INTO chat_messages (role, content, created_at) VALUES (?, ?, ?)",
                (role.value, content, created.isoformat()),
            )
            self._conn.commit()
        return TranscriptMessage(int(cur.lastrowid), role, content, created)

    def update(self, message_id: int, content: str) -> TranscriptMessage:
        with self._lock:
            cur = self._conn.execute(
                "UPDATE chat_messages SET content = ? WHERE id = ?", (content, message_id)
            )
            self._conn.commit()
            if cur.rowcount == 0:
                raise KeyError(f"Message not found: {message_id}")
            row = self._conn.execute("SELECT * FROM chat_messages WHERE id = ?", (message_id,)).fetchone()
        return self._row(row)

    def delete(self, message_id: int) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM chat_messages WHERE id = ?", (message_id,))
            self._conn.commit()

    def get(self, message_id: int) -> TranscriptMessage | None:
        with self._lock:
            row = self._conn.execute("SELECT * FROM chat_messages WHERE id = ?", (message_id,)).fetchone()
        return None if row is None else self._row(row)

    def recent(self, limit: int) -> list[TranscriptMessage]:
        if limit <= 0:
            return []
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM chat_messages ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [self._row(row) for row in reversed(rows)]

    def history(self) -> list[TranscriptMessage]:
        with self._lock:
            rows = self._conn.execute("SELECT * FROM chat_messages ORDER BY id ASC").fetchall()
        return [self._row(row) for row in rows]

    def count(self) -> int:
        with self._lock:
            return int(self._conn.execute("SELECT COUNT(*) FROM chat_messages").fetchone()[0])

    def clear(self) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM chat_messages")
            self._conn.commit()

    def prune(self, keep: int) -> int:
        with self._lock:
            total = int(self._conn.execute("SELECT COUNT(*) FROM chat_messages").fetchone()[0])
            excess = max(0, total - max(0, keep))
            if excess:
                self._conn.execute(
                    "DELETE FROM chat_messages WHERE id IN "
                    "(SELECT id FROM chat_messages ORDER BY id ASC LIMIT ?)",
                    (excess,),
                )
                self._conn.commit()
        return excess
