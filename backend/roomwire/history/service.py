"""DuckDB-based durable message log.

The presence and broadcast engine appends every room message here and reads
recent history back when a connection joins. Reaction tallies are stored on
the message row, so they are exactly as durable as the message itself.

Database Schema:
    chat_messages table:
        - seq: Auto-incrementing insertion order (ties on ts break by seq)
        - room_id / id: Composite primary key
        - user_id, display_name, type, content, ts
        - recipient_id, file_url, mime_type: Optional per-type fields
        - reactions: JSON object emoji -> [participant ids]

Thread Safety:
    The DuckDB connection is NOT thread-safe. The service is only used from
    the event loop thread.

Usage:
    store = MessageLogStore(db_path=":memory:")
    store.append(message)
    recent = store.recent("general", limit=50)
"""
import json
import logging
import time
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import List, Optional

import duckdb

from roomwire.chat.errors import PersistenceError
from roomwire.chat.schemas import ChatMessage, MessageType

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id, room_id, user_id, display_name, type, content, ts, "
    "recipient_id, file_url, mime_type, reactions"
)


class MessageLog(ABC):
    """Contract of the durable message log collaborator."""

    @abstractmethod
    def append(self, message: ChatMessage) -> None:
        """Persist a room message. Raises PersistenceError."""

    @abstractmethod
    def recent(
        self,
        room: str,
        limit: int,
        before: Optional[float] = None,
        before_id: Optional[str] = None,
    ) -> List[ChatMessage]:
        """Most recent messages of a room, oldest first (newest last).

        ``before`` and ``before_id`` are the ``ts`` and ``id`` of the oldest
        message a client holds. Messages sharing that ``ts`` but logged
        earlier are still returned when ``before_id`` is given.
        """

    @abstractmethod
    def purge_older_than(self, age: timedelta) -> int:
        """Delete messages older than ``age``. Returns the number deleted."""

    @abstractmethod
    def find(self, room: str, message_id: str) -> Optional[ChatMessage]:
        """Look up one message, or None."""

    @abstractmethod
    def save_reactions(self, message: ChatMessage) -> None:
        """Persist the current reaction tally of a stored message."""

    def close(self) -> None:
        """Release resources."""


class MessageLogStore(MessageLog):
    """DuckDB implementation of the message log.

    Attributes:
        _db_path: Path to the DuckDB database file, or ":memory:".
    """

    _db_path: str = "chat_messages.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Initialize the store, creating the schema if needed.

        Args:
            db_path: Path to DuckDB file. Defaults to "chat_messages.duckdb".
        """
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create the sequence, table and index (idempotent)."""
        conn = self._get_connection()
        conn.execute("""
            CREATE SEQUENCE IF NOT EXISTS chat_messages_seq START 1;
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS chat_messages (
                seq BIGINT DEFAULT nextval('chat_messages_seq'),
                id VARCHAR NOT NULL,
                room_id VARCHAR NOT NULL,
                user_id VARCHAR NOT NULL,
                display_name VARCHAR NOT NULL,
                type VARCHAR NOT NULL,
                content VARCHAR NOT NULL,
                ts DOUBLE NOT NULL,
                recipient_id VARCHAR,
                file_url VARCHAR,
                mime_type VARCHAR,
                reactions VARCHAR NOT NULL,
                PRIMARY KEY (room_id, id)
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_chat_messages_room ON chat_messages(room_id)
        """)

    def append(self, message: ChatMessage) -> None:
        if not message.is_persistent:
            raise PersistenceError(f"{message.type.value} messages are not logged")
        try:
            self._get_connection().execute(
                f"INSERT INTO chat_messages ({_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    message.id,
                    message.roomId,
                    message.userId,
                    message.displayName,
                    message.type.value,
                    message.content,
                    message.ts,
                    message.recipientId,
                    message.fileUrl,
                    message.mimeType,
                    json.dumps(message.reactions),
                ],
            )
        except duckdb.Error as e:
            raise PersistenceError(f"append to room {message.roomId} failed: {e}") from e

    def recent(
        self,
        room: str,
        limit: int,
        before: Optional[float] = None,
        before_id: Optional[str] = None,
    ) -> List[ChatMessage]:
        if limit <= 0:
            return []
        query = f"SELECT {_COLUMNS} FROM chat_messages WHERE room_id = ?"
        params: list = [room]
        if before is not None and before_id is not None:
            # Same-ts ties resolve by insertion order; an unknown id falls back to ts < before.
            query += (
                " AND (ts < ? OR (ts = ? AND seq < (SELECT seq FROM chat_messages"
                " WHERE room_id = ? AND id = ?)))"
            )
            params.extend([before, before, room, before_id])
        elif before is not None:
            query += " AND ts < ?"
            params.append(before)
        query += " ORDER BY seq DESC LIMIT ?"
        params.append(limit)
        try:
            rows = self._get_connection().execute(query, params).fetchall()
        except duckdb.Error as e:
            raise PersistenceError(f"history query for room {room} failed: {e}") from e
        return [self._row_to_message(row) for row in reversed(rows)]

    def purge_older_than(self, age: timedelta) -> int:
        cutoff = time.time() - age.total_seconds()
        conn = self._get_connection()
        try:
            count = conn.execute(
                "SELECT COUNT(*) FROM chat_messages WHERE ts < ?", [cutoff]
            ).fetchone()[0]
            if count:
                conn.execute("DELETE FROM chat_messages WHERE ts < ?", [cutoff])
        except duckdb.Error as e:
            raise PersistenceError(f"retention purge failed: {e}") from e
        logger.info(f"Purged {count} messages older than {age}")
        return count

    def find(self, room: str, message_id: str) -> Optional[ChatMessage]:
        try:
            row = self._get_connection().execute(
                f"SELECT {_COLUMNS} FROM chat_messages WHERE room_id = ? AND id = ?",
                [room, message_id],
            ).fetchone()
        except duckdb.Error as e:
            raise PersistenceError(f"lookup of {message_id} failed: {e}") from e
        return self._row_to_message(row) if row else None

    def save_reactions(self, message: ChatMessage) -> None:
        try:
            self._get_connection().execute(
                "UPDATE chat_messages SET reactions = ? WHERE room_id = ? AND id = ?",
                [json.dumps(message.reactions), message.roomId, message.id],
            )
        except duckdb.Error as e:
            raise PersistenceError(f"reaction update for {message.id} failed: {e}") from e

    def count(self, room: Optional[str] = None) -> int:
        """Number of stored messages, optionally for one room."""
        conn = self._get_connection()
        if room is None:
            return conn.execute("SELECT COUNT(*) FROM chat_messages").fetchone()[0]
        return conn.execute(
            "SELECT COUNT(*) FROM chat_messages WHERE room_id = ?", [room]
        ).fetchone()[0]

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    @staticmethod
    def _row_to_message(row: tuple) -> ChatMessage:
        return ChatMessage(
            id=row[0],
            roomId=row[1],
            userId=row[2],
            displayName=row[3],
            type=MessageType(row[4]),
            content=row[5],
            ts=row[6],
            recipientId=row[7],
            fileUrl=row[8],
            mimeType=row[9],
            reactions=json.loads(row[10]) if row[10] else {},
        )
