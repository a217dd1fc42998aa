"""DuckDB-backed storage for collaboration aggregates and live chat messages.

Each Collaboration is stored as one JSON document keyed by ``chat_id``, with
``owner`` and ``share_link`` lifted into their own columns so share tokens
can be looked up directly.

Database Schema:
    collaborations table:
        - chat_id: Primary key
        - owner: Owner email
        - share_link: Current share token (nullable)
        - document: Full aggregate as JSON
        - updated_at: Last write (UTC)
    collaboration_messages table:
        - id, chat_id, sender_email, sender_name, text, created_at

Concurrency:
    Every public method is a coroutine that runs the DuckDB call in a worker
    thread, so other handlers keep running while the store is busy. A single
    lock serializes use of the one connection. Writes are last-write-wins;
    there is no version check on the aggregate.
"""
import asyncio
import json
import logging
import threading
from datetime import datetime, timezone
from typing import List, Optional

import duckdb

from .errors import StoreError
from .schemas import ChatMessage, Collaboration, UserRef

logger = logging.getLogger(__name__)


def _naive_utc(value: datetime) -> datetime:
    # TIMESTAMP columns hold naive UTC
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class CollaborationStore:
    """Persistent home of Collaboration aggregates.

    The connection is opened lazily on first use, so constructing a store
    (for example while building the FastAPI app at import time) never
    touches the filesystem.
    """

    def __init__(self, db_path: str = "citruslab.duckdb") -> None:
        self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.Lock()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
            self._initialize_db(self._connection)
            logger.info("[CollaborationStore] Initialized with db=%s", self._db_path)
        return self._connection

    @staticmethod
    def _initialize_db(conn: duckdb.DuckDBPyConnection) -> None:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS collaborations (
                chat_id    VARCHAR PRIMARY KEY,
                owner      VARCHAR NOT NULL,
                share_link VARCHAR,
                document   VARCHAR NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS collaboration_messages (
                id           VARCHAR PRIMARY KEY,
                chat_id      VARCHAR NOT NULL,
                sender_email VARCHAR NOT NULL,
                sender_name  VARCHAR NOT NULL,
                text         VARCHAR NOT NULL,
                created_at   TIMESTAMP NOT NULL
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_messages_chat ON collaboration_messages(chat_id)"
        )

    async def _run(self, fn, *args):
        def call():
            with self._lock:
                try:
                    return fn(self._get_connection(), *args)
                except duckdb.Error as exc:
                    logger.error("[CollaborationStore] %s failed: %s", fn.__name__, exc)
                    raise StoreError("Collaboration store operation failed") from exc

        return await asyncio.to_thread(call)

    # -----------------------------------------------------------------------
    # Collaborations
    # -----------------------------------------------------------------------

    async def load(self, chat_id: str) -> Optional[Collaboration]:
        return await self._run(self._load, chat_id)

    async def find_by_share_token(self, token: str) -> Optional[Collaboration]:
        return await self._run(self._find_by_share_token, token)

    async def create_if_absent(self, collaboration: Collaboration) -> Collaboration:
        """Insert the aggregate unless the chat id exists; return the stored one."""
        return await self._run(self._create_if_absent, collaboration)

    async def save(self, collaboration: Collaboration) -> Collaboration:
        return await self._run(self._save, collaboration)

    @staticmethod
    def _load(conn, chat_id: str) -> Optional[Collaboration]:
        row = conn.execute(
            "SELECT document FROM collaborations WHERE chat_id = ?", [chat_id]
        ).fetchone()
        return Collaboration.model_validate_json(row[0]) if row else None

    @staticmethod
    def _find_by_share_token(conn, token: str) -> Optional[Collaboration]:
        row = conn.execute(
            "SELECT document FROM collaborations WHERE share_link = ?", [token]
        ).fetchone()
        return Collaboration.model_validate_json(row[0]) if row else None

    @classmethod
    def _create_if_absent(cls, conn, collaboration: Collaboration) -> Collaboration:
        conn.execute(
            """
            INSERT INTO collaborations (chat_id, owner, share_link, document, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (chat_id) DO NOTHING
            """,
            [
                collaboration.chatId,
                collaboration.owner,
                collaboration.shareLink,
                collaboration.model_dump_json(),
                _naive_utc(collaboration.updatedAt),
            ],
        )
        return cls._load(conn, collaboration.chatId)

    @staticmethod
    def _save(conn, collaboration: Collaboration) -> Collaboration:
        updated = conn.execute(
            """
            UPDATE collaborations
            SET owner = ?, share_link = ?, document = ?, updated_at = ?
            WHERE chat_id = ?
            RETURNING chat_id
            """,
            [
                collaboration.owner,
                collaboration.shareLink,
                collaboration.model_dump_json(),
                _naive_utc(collaboration.updatedAt),
                collaboration.chatId,
            ],
        ).fetchone()
        if updated is None:
            conn.execute(
                """
                INSERT INTO collaborations (chat_id, owner, share_link, document, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    collaboration.chatId,
                    collaboration.owner,
                    collaboration.shareLink,
                    collaboration.model_dump_json(),
                    _naive_utc(collaboration.updatedAt),
                ],
            )
        return collaboration

    # -----------------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------------

    async def append_message(self, message: ChatMessage) -> ChatMessage:
        return await self._run(self._append_message, message)

    async def list_messages(
        self, chat_id: str, before: Optional[datetime] = None, limit: int = 50
    ) -> List[ChatMessage]:
        """Most recent ``limit`` messages older than ``before``, oldest first."""
        return await self._run(self._list_messages, chat_id, before, limit)

    @staticmethod
    def _append_message(conn, message: ChatMessage) -> ChatMessage:
        conn.execute(
            """
            INSERT INTO collaboration_messages
              (id, chat_id, sender_email, sender_name, text, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                message.id,
                message.chatId,
                message.sender.email,
                message.sender.name,
                message.text,
                _naive_utc(message.timestamp),
            ],
        )
        return message

    @staticmethod
    def _list_messages(conn, chat_id: str, before: Optional[datetime], limit: int) -> List[ChatMessage]:
        if before is not None:
            rows = conn.execute(
                """
                SELECT id, chat_id, sender_email, sender_name, text, created_at
                FROM collaboration_messages
                WHERE chat_id = ? AND created_at < ?
                ORDER BY created_at DESC
                LIMIT ?
                """,
                [chat_id, _naive_utc(before), limit],
            ).fetchall()
        else:
            rows = conn.execute(
                """
                SELECT id, chat_id, sender_email, sender_name, text, created_at
                FROM collaboration_messages
                WHERE chat_id = ?
                ORDER BY created_at DESC
                LIMIT ?
                """,
                [chat_id, limit],
            ).fetchall()

        return [
            ChatMessage(
                id=row[0],
                chatId=row[1],
                sender=UserRef(email=row[2], name=row[3]),
                text=row[4],
                timestamp=row[5].replace(tzinfo=timezone.utc),
            )
            for row in reversed(rows)
        ]

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None


def document_of(collaboration: Collaboration) -> dict:
    """JSON-safe dict of an aggregate, as returned by the HTTP surface."""
    return json.loads(collaboration.model_dump_json())
