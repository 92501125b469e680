import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator, Protocol, runtime_checkable

from common.ids import ascending

from bellows.errors import BellowsError, InvalidStateError, NotFoundError
from bellows.session.message import (
    AssistantMessage,
    MessageError,
    MessageInfo,
    MessageTime,
    MessageWithParts,
    ModelRef,
    Part,
    PartInput,
    TokenUsage,
    UserMessage,
    message_adapter,
    now_ms,
    part_adapter,
)
from bellows.session.schema import Session

logger = logging.getLogger(__name__)


class StorageError(BellowsError):
    pass


@runtime_checkable
class MessageStore(Protocol):
    def save_message(self, info: MessageInfo) -> None: ...

    def get_message(self, message_id: str) -> MessageInfo | None: ...

    def get_message_with_parts(self, message_id: str) -> MessageWithParts | None: ...

    def get_parts(self, message_id: str) -> list[Part]: ...

    def stream_messages(self, session_id: str) -> Iterable[MessageWithParts]:
        """Messages of a session with their parts, newest first."""
        ...

    def get_last_message(self, session_id: str, role: str | None = None) -> MessageInfo | None: ...

    def save_part(self, part: Part) -> None: ...

    def add_part(self, message_id: str, data: dict[str, Any]) -> Part: ...

    def update_part(self, part: Part) -> bool: ...

    def create_user_message(
        self,
        session_id: str,
        parts: list[PartInput],
        agent: str,
        model: ModelRef,
        system: str | None = None,
    ) -> MessageWithParts: ...

    def create_assistant_message(
        self, session_id: str, parent_id: str, model: ModelRef, agent: str
    ) -> AssistantMessage: ...

    def complete_assistant_message(
        self,
        message_id: str,
        cost: float,
        tokens: TokenUsage,
        finish: str | None,
        summary: bool = False,
        error: MessageError | None = None,
    ) -> AssistantMessage: ...

    def set_assistant_message_error(
        self, message_id: str, error: MessageError
    ) -> AssistantMessage: ...

    def delete_message(self, message_id: str) -> None: ...

    def delete_session_messages(self, session_id: str) -> int: ...

    def save_session(self, session: Session) -> None: ...

    def get_session(self, session_id: str) -> Session | None: ...

    def list_sessions(self) -> list[Session]: ...

    def delete_session(self, session_id: str) -> None: ...


SCHEMA_VERSION = 1

SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    updated_at TEXT NOT NULL,
    data TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    role TEXT NOT NULL,
    data TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS parts (
    id TEXT PRIMARY KEY,
    message_id TEXT NOT NULL,
    session_id TEXT NOT NULL,
    data TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id, id);
CREATE INDEX IF NOT EXISTS idx_parts_message ON parts(message_id);
CREATE INDEX IF NOT EXISTS idx_parts_session ON parts(session_id);
"""

PAGE_SIZE = 50


class _MessageStream:
    """Lazy, restartable iteration over a session's messages, newest first."""

    def __init__(self, store: "SQLiteMessageStore", session_id: str, page_size: int):
        self._store = store
        self._session_id = session_id
        self._page_size = page_size

    def __iter__(self) -> Iterator[MessageWithParts]:
        cursor_id: str | None = None
        while True:
            rows = self._store._message_page(self._session_id, cursor_id, self._page_size)
            for row in rows:
                info = message_adapter.validate_json(row["data"])
                yield MessageWithParts(info=info, parts=self._store.get_parts(info.id))
            if len(rows) < self._page_size:
                return
            cursor_id = rows[-1]["id"]


class SQLiteMessageStore:
    """SQLite-backed message store.

    Every write commits before returning, and reads go to the same connection,
    so a write is visible to the next read without polling. A single lock
    serializes access across the threads of concurrent sessions.
    """

    def __init__(self, db_path: str | Path = ":memory:", page_size: int = PAGE_SIZE):
        self.db_path = str(db_path)
        self.page_size = page_size
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")

        cursor = self._conn.cursor()
        cursor.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
        )
        if not cursor.fetchone():
            cursor.executescript(SCHEMA)
            cursor.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
            )
            self._conn.commit()
            logger.info(f"Message store initialized with schema version {SCHEMA_VERSION}")
        else:
            cursor.execute("SELECT version FROM schema_version")
            row = cursor.fetchone()
            if row and row[0] != SCHEMA_VERSION:
                logger.warning(
                    f"Schema version mismatch: expected {SCHEMA_VERSION}, got {row[0]}"
                )

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageError("Database connection not initialized")
        return self._conn

    def close(self) -> None:
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    @contextmanager
    def _write(self, what: str) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            cursor = self.conn.cursor()
            try:
                yield cursor
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                logger.error(f"Failed to {what}: {e}")
                raise StorageError(f"Failed to {what}: {e}") from e
            except Exception:
                self.conn.rollback()
                raise

    def _fetchone(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute(sql, params)
            return cursor.fetchone()

    def _fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute(sql, params)
            return cursor.fetchall()

    # Messages

    @staticmethod
    def _upsert_message(cursor: sqlite3.Cursor, info: MessageInfo) -> None:
        cursor.execute(
            """
            INSERT INTO messages (id, session_id, role, data) VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET data = excluded.data
            """,
            (info.id, info.session_id, info.role, info.model_dump_json()),
        )

    @staticmethod
    def _upsert_part(cursor: sqlite3.Cursor, part: Part) -> None:
        cursor.execute(
            """
            INSERT INTO parts (id, message_id, session_id, data) VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET data = excluded.data
            """,
            (part.id, part.message_id, part.session_id, part.model_dump_json()),
        )

    def save_message(self, info: MessageInfo) -> None:
        with self._write(f"save message {info.id}") as cursor:
            self._upsert_message(cursor, info)
        logger.debug(f"Saved {info.role} message {info.id}")

    def get_message(self, message_id: str) -> MessageInfo | None:
        row = self._fetchone("SELECT data FROM messages WHERE id = ?", (message_id,))
        if not row:
            return None
        return message_adapter.validate_json(row["data"])

    def get_parts(self, message_id: str) -> list[Part]:
        rows = self._fetchall(
            "SELECT data FROM parts WHERE message_id = ? ORDER BY rowid", (message_id,)
        )
        return [part_adapter.validate_json(row["data"]) for row in rows]

    def get_message_with_parts(self, message_id: str) -> MessageWithParts | None:
        info = self.get_message(message_id)
        if info is None:
            return None
        return MessageWithParts(info=info, parts=self.get_parts(message_id))

    def _message_page(
        self, session_id: str, before_id: str | None, limit: int
    ) -> list[sqlite3.Row]:
        if before_id is None:
            return self._fetchall(
                "SELECT id, data FROM messages WHERE session_id = ? ORDER BY id DESC LIMIT ?",
                (session_id, limit),
            )
        return self._fetchall(
            """
            SELECT id, data FROM messages WHERE session_id = ? AND id < ?
            ORDER BY id DESC LIMIT ?
            """,
            (session_id, before_id, limit),
        )

    def stream_messages(self, session_id: str) -> Iterable[MessageWithParts]:
        return _MessageStream(self, session_id, self.page_size)

    def get_last_message(self, session_id: str, role: str | None = None) -> MessageInfo | None:
        if role is None:
            row = self._fetchone(
                "SELECT data FROM messages WHERE session_id = ? ORDER BY id DESC LIMIT 1",
                (session_id,),
            )
        else:
            row = self._fetchone(
                """
                SELECT data FROM messages WHERE session_id = ? AND role = ?
                ORDER BY id DESC LIMIT 1
                """,
                (session_id, role),
            )
        if not row:
            return None
        return message_adapter.validate_json(row["data"])

    # Parts

    def save_part(self, part: Part) -> None:
        with self._write(f"save part {part.id}") as cursor:
            self._upsert_part(cursor, part)
        logger.debug(f"Saved {part.type} part {part.id}")

    def add_part(self, message_id: str, data: dict[str, Any]) -> Part:
        info = self.get_message(message_id)
        if info is None:
            raise NotFoundError(f"Message not found: {message_id}")
        part = part_adapter.validate_python(
            {
                **data,
                "id": ascending("part"),
                "session_id": info.session_id,
                "message_id": message_id,
            }
        )
        self.save_part(part)
        return part

    def update_part(self, part: Part) -> bool:
        """Upsert ``part``; returns False when the stored copy is already identical."""
        payload = part.model_dump_json()
        with self._lock:
            row = self._fetchone("SELECT data FROM parts WHERE id = ?", (part.id,))
            if row and row["data"] == payload:
                return False
            self.save_part(part)
        return True

    # Convenience constructors

    def create_user_message(
        self,
        session_id: str,
        parts: list[PartInput],
        agent: str,
        model: ModelRef,
        system: str | None = None,
    ) -> MessageWithParts:
        info = UserMessage(
            id=ascending("message"),
            session_id=session_id,
            agent=agent,
            model=model,
            system=system,
        )
        stored: list[Part] = [
            part_adapter.validate_python(
                {
                    **item.model_dump(),
                    "id": ascending("part"),
                    "session_id": session_id,
                    "message_id": info.id,
                }
            )
            for item in parts
        ]
        with self._write(f"create user message {info.id}") as cursor:
            self._upsert_message(cursor, info)
            for part in stored:
                self._upsert_part(cursor, part)
        logger.debug(f"Created user message {info.id} with {len(stored)} parts")
        return MessageWithParts(info=info, parts=stored)

    def create_assistant_message(
        self, session_id: str, parent_id: str, model: ModelRef, agent: str
    ) -> AssistantMessage:
        parent = self.get_message(parent_id)
        if parent is None or parent.session_id != session_id:
            raise NotFoundError(f"Parent message {parent_id} not found in session {session_id}")
        if parent.role != "user":
            raise InvalidStateError(f"Parent message {parent_id} is not a user message")
        info = AssistantMessage(
            id=ascending("message"),
            session_id=session_id,
            parent_id=parent_id,
            provider_id=model.provider_id,
            model_id=model.model_id,
            agent=agent,
        )
        self.save_message(info)
        return info

    def _get_assistant(self, message_id: str) -> AssistantMessage:
        info = self.get_message(message_id)
        if info is None:
            raise NotFoundError(f"Message not found: {message_id}")
        if not isinstance(info, AssistantMessage):
            raise InvalidStateError(f"Message {message_id} is not an assistant message")
        return info

    def complete_assistant_message(
        self,
        message_id: str,
        cost: float,
        tokens: TokenUsage,
        finish: str | None,
        summary: bool = False,
        error: MessageError | None = None,
    ) -> AssistantMessage:
        with self._lock:
            info = self._get_assistant(message_id)
            if info.settled:
                raise InvalidStateError(f"Assistant message {message_id} is already settled")
            settled = info.model_copy(
                update={
                    "time": MessageTime(created=info.time.created, completed=now_ms()),
                    "cost": cost,
                    "tokens": tokens,
                    "finish": finish,
                    "summary": summary,
                    "error": error,
                }
            )
            self.save_message(settled)
        logger.debug(f"Completed assistant message {message_id} (finish={finish})")
        return settled

    def set_assistant_message_error(
        self, message_id: str, error: MessageError
    ) -> AssistantMessage:
        with self._lock:
            info = self._get_assistant(message_id)
            if info.settled:
                logger.warning(
                    f"Ignoring {error.name} for already settled message {message_id}"
                )
                return info
            settled = info.model_copy(
                update={
                    "time": MessageTime(created=info.time.created, completed=now_ms()),
                    "error": error,
                }
            )
            self.save_message(settled)
        logger.debug(f"Assistant message {message_id} settled with {error.name}")
        return settled

    # Deletion

    def delete_message(self, message_id: str) -> None:
        with self._write(f"delete message {message_id}") as cursor:
            cursor.execute("DELETE FROM parts WHERE message_id = ?", (message_id,))
            cursor.execute("DELETE FROM messages WHERE id = ?", (message_id,))

    def delete_session_messages(self, session_id: str) -> int:
        with self._write(f"delete messages of session {session_id}") as cursor:
            cursor.execute("DELETE FROM parts WHERE session_id = ?", (session_id,))
            cursor.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
            deleted = cursor.rowcount
        logger.debug(f"Deleted {deleted} messages from session {session_id}")
        return deleted

    # Sessions

    def save_session(self, session: Session) -> None:
        with self._write(f"save session {session.id}") as cursor:
            cursor.execute(
                """
                INSERT INTO sessions (id, updated_at, data) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    updated_at = excluded.updated_at, data = excluded.data
                """,
                (session.id, session.updated_at, session.model_dump_json()),
            )

    def get_session(self, session_id: str) -> Session | None:
        row = self._fetchone("SELECT data FROM sessions WHERE id = ?", (session_id,))
        if not row:
            return None
        return Session.model_validate_json(row["data"])

    def list_sessions(self) -> list[Session]:
        rows = self._fetchall("SELECT data FROM sessions ORDER BY updated_at DESC, id DESC")
        return [Session.model_validate_json(row["data"]) for row in rows]

    def delete_session(self, session_id: str) -> None:
        self.delete_session_messages(session_id)
        with self._write(f"delete session {session_id}") as cursor:
            cursor.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
