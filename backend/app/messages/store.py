"""DuckDB-based message store.

Durable persistence for direct messages plus a small user directory. The
service implements the singleton pattern so the whole process shares one
database connection.

Database Schema:
    messages table:
        - seq: Auto-incrementing insertion order (tie-breaker for ordering)
        - id: Message ID (primary key)
        - sender / recipient: User IDs
        - text: Optional message text
        - file_name: Optional stored attachment name
        - created_at: Server timestamp (UTC)
        - read_by_recipient: Read flag (monotonic)
        - send_time: Client correlation token

    users table:
        - user_id: Primary key
        - username: Last username seen for that id

Thread Safety:
    Calls are serialised with a lock so the store can be used from worker
    threads (``asyncio.to_thread``) without blocking the event loop.

Usage:
    store = MessageStore.get_instance()
    store.insert(message)
    updated = store.mark_conversation_read(sender="a", recipient="b")
    history = store.find_conversation("a", "b")
"""
import logging
import threading
from typing import List, Optional

import duckdb

from .schemas import FileRef, Message, UserRecord

logger = logging.getLogger(__name__)

_MESSAGE_COLUMNS = "id, sender, recipient, text, file_name, created_at, read_by_recipient, send_time"


def _row_to_message(row: tuple) -> Message:
    return Message(
        id=row[0],
        sender=row[1],
        recipient=row[2],
        text=row[3],
        file=FileRef(name=row[4]) if row[4] else None,
        createdAt=row[5],
        readByRecipient=row[6],
        sendTime=row[7],
    )


class MessageStore:
    """Singleton store for messages and user records in DuckDB.

    Attributes:
        _instance: Singleton instance of the store.
        _db_path: Path to the DuckDB database file.
    """

    _instance: Optional["MessageStore"] = None
    _db_path: str = "messages.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Initialize the store, creating the schema if needed.

        Args:
            db_path: Path to DuckDB file, or ":memory:".
        """
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.Lock()
        self._initialize_db()

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "MessageStore":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close and forget the singleton (for testing)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create tables and sequence. Idempotent."""
        conn = self._get_connection()
        conn.execute("CREATE SEQUENCE IF NOT EXISTS messages_seq START 1")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                seq BIGINT DEFAULT nextval('messages_seq'),
                id VARCHAR PRIMARY KEY,
                sender VARCHAR NOT NULL,
                recipient VARCHAR NOT NULL,
                text VARCHAR,
                file_name VARCHAR,
                created_at TIMESTAMP NOT NULL,
                read_by_recipient BOOLEAN NOT NULL DEFAULT FALSE,
                send_time VARCHAR
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_messages_pair ON messages(sender, recipient)
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                user_id VARCHAR PRIMARY KEY,
                username VARCHAR NOT NULL
            )
        """)

    # =========================================================================
    # Messages
    # =========================================================================

    def insert(self, message: Message) -> str:
        """Persist a new message and return its id."""
        with self._lock:
            self._get_connection().execute(
                f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    message.id,
                    message.sender,
                    message.recipient,
                    message.text,
                    message.file.name if message.file else None,
                    message.createdAt,
                    message.readByRecipient,
                    message.sendTime,
                ],
            )
        logger.debug("Stored message %s (%s -> %s)", message.id, message.sender, message.recipient)
        return message.id

    def get(self, message_id: str) -> Optional[Message]:
        with self._lock:
            row = self._get_connection().execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?",
                [message_id],
            ).fetchone()
        return _row_to_message(row) if row else None

    def mark_conversation_read(self, sender: str, recipient: str) -> int:
        """Mark every unread message from *sender* to *recipient* as read.

        Returns:
            Number of messages that flipped to read. Zero when called again
            with nothing new to read.
        """
        with self._lock:
            rows = self._get_connection().execute(
                """
                UPDATE messages SET read_by_recipient = TRUE
                WHERE sender = ? AND recipient = ? AND NOT read_by_recipient
                RETURNING id
                """,
                [sender, recipient],
            ).fetchall()
        return len(rows)

    def mark_read(self, message_id: str) -> Optional[Message]:
        """Mark one message as read.

        Re-marking an already read message is a no-op.

        Returns:
            The message after the update, or None if the id is unknown.
        """
        with self._lock:
            conn = self._get_connection()
            conn.execute(
                "UPDATE messages SET read_by_recipient = TRUE WHERE id = ?",
                [message_id],
            )
            row = conn.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?",
                [message_id],
            ).fetchone()
        return _row_to_message(row) if row else None

    def find_conversation(self, user_a: str, user_b: str) -> List[Message]:
        """All messages exchanged between two users, oldest first."""
        with self._lock:
            rows = self._get_connection().execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM messages
                WHERE (sender = ? AND recipient = ?) OR (sender = ? AND recipient = ?)
                ORDER BY created_at ASC, seq ASC
                """,
                [user_a, user_b, user_b, user_a],
            ).fetchall()
        return [_row_to_message(r) for r in rows]

    # =========================================================================
    # User directory
    # =========================================================================

    def upsert_user(self, user_id: str, username: str) -> None:
        with self._lock:
            self._get_connection().execute(
                """
                INSERT INTO users (user_id, username) VALUES (?, ?)
                ON CONFLICT (user_id) DO UPDATE SET username = excluded.username
                """,
                [user_id, username],
            )

    def list_users(self) -> List[UserRecord]:
        with self._lock:
            rows = self._get_connection().execute(
                "SELECT user_id, username FROM users ORDER BY username"
            ).fetchall()
        return [UserRecord(userId=r[0], username=r[1]) for r in rows]

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
