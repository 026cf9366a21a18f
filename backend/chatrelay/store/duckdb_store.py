"""DuckDB-backed document store for chatrelay.

Database Schema:
    users:                id, username, display_image
    conversations:        id, kind, title, direct_key, last_message_id,
                          created_at, updated_at
    conversation_members: conversation_id, user_id, position, is_admin,
                          hidden, has_left
    messages:             id, seq, conversation_id, sender_id, body,
                          media_url, media_kind, is_system, created_at
    message_reads:        message_id, conversation_id, user_id, read_at

``messages.seq`` comes from a sequence and defines commit order; timestamps
are only for display and paging cursors.

Thread Safety:
    A single DuckDB connection is shared by every worker thread the
    ConversationStore dispatches to. All access goes through ``_lock`` and
    multi-statement writes run inside one transaction.
"""
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Sequence

import duckdb

from chatrelay.conversations.schemas import (
    Conversation,
    ConversationKind,
    MediaRef,
    Message,
    User,
    utcnow,
)

from .base import ChatRepository

logger = logging.getLogger(__name__)

_SCHEMA = [
    "CREATE SEQUENCE IF NOT EXISTS messages_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS users (
        id            VARCHAR PRIMARY KEY,
        username      VARCHAR NOT NULL,
        display_image VARCHAR
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id              VARCHAR PRIMARY KEY,
        kind            VARCHAR NOT NULL,
        title           VARCHAR,
        direct_key      VARCHAR,
        last_message_id VARCHAR,
        created_at      TIMESTAMP NOT NULL,
        updated_at      TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversation_members (
        conversation_id VARCHAR NOT NULL,
        user_id         VARCHAR NOT NULL,
        position        INTEGER NOT NULL,
        is_admin        BOOLEAN NOT NULL DEFAULT FALSE,
        hidden          BOOLEAN NOT NULL DEFAULT FALSE,
        has_left        BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id              VARCHAR PRIMARY KEY,
        seq             BIGINT NOT NULL DEFAULT nextval('messages_seq'),
        conversation_id VARCHAR NOT NULL,
        sender_id       VARCHAR NOT NULL,
        body            VARCHAR,
        media_url       VARCHAR,
        media_kind      VARCHAR,
        is_system       BOOLEAN NOT NULL DEFAULT FALSE,
        created_at      TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS message_reads (
        message_id      VARCHAR NOT NULL,
        conversation_id VARCHAR NOT NULL,
        user_id         VARCHAR NOT NULL,
        read_at         TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_members_user ON conversation_members(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_members_conv ON conversation_members(conversation_id)",
    "CREATE INDEX IF NOT EXISTS idx_messages_conv ON messages(conversation_id)",
    "CREATE INDEX IF NOT EXISTS idx_reads_message ON message_reads(message_id)",
]

_CONVERSATION_COLUMNS = "id, kind, title, last_message_id, created_at, updated_at"
_MESSAGE_COLUMNS = (
    "id, conversation_id, sender_id, body, media_url, media_kind, is_system, created_at"
)


def direct_key(user_a: str, user_b: str) -> str:
    """Order-independent key for a pair of users."""
    return "|".join(sorted((user_a, user_b)))


class DuckDBChatRepository(ChatRepository):
    """ChatRepository stored in a DuckDB file (or ``":memory:"``)."""

    def __init__(self, db_path: str = "chatrelay.duckdb") -> None:
        self._db_path = db_path
        self._lock = threading.RLock()
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()
        logger.info("[Store] DuckDB repository ready at %s", self._db_path)

    # -----------------------------------------------------------------------
    # Connection handling
    # -----------------------------------------------------------------------

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        conn = self._get_connection()
        for statement in _SCHEMA:
            conn.execute(statement)

    @contextmanager
    def _read(self) -> Iterator[duckdb.DuckDBPyConnection]:
        with self._lock:
            yield self._get_connection()

    @contextmanager
    def _transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        with self._lock:
            conn = self._get_connection()
            conn.begin()
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            conn.commit()

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None

    # -----------------------------------------------------------------------
    # Users
    # -----------------------------------------------------------------------

    def upsert_user(self, user: User) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO users (id, username, display_image) VALUES (?, ?, ?)",
                [user.id, user.username, user.display_image],
            )

    def get_users(self, user_ids: Sequence[str]) -> Dict[str, User]:
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return {}
        with self._read() as conn:
            rows = conn.execute(
                "SELECT id, username, display_image FROM users WHERE list_contains(?, id)",
                [ids],
            ).fetchall()
        return {r[0]: User(id=r[0], username=r[1], display_image=r[2]) for r in rows}

    def search_users(self, prefix: str, limit: int) -> List[User]:
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT id, username, display_image FROM users
                WHERE starts_with(lower(username), lower(?))
                ORDER BY username
                LIMIT ?
                """,
                [prefix, limit],
            ).fetchall()
        return [User(id=r[0], username=r[1], display_image=r[2]) for r in rows]

    # -----------------------------------------------------------------------
    # Conversations
    # -----------------------------------------------------------------------

    def insert_conversation(self, conversation: Conversation) -> None:
        key = None
        if conversation.kind == ConversationKind.DIRECT:
            key = direct_key(*conversation.participant_ids)
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO conversations
                  (id, kind, title, direct_key, last_message_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    conversation.id, conversation.kind.value, conversation.title, key,
                    conversation.last_message_id, conversation.created_at,
                    conversation.updated_at,
                ],
            )
            self._write_members(conn, conversation)

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._read() as conn:
            row = conn.execute(
                f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE id = ?",
                [conversation_id],
            ).fetchone()
            if row is None:
                return None
            return self._hydrate(conn, [row])[0]

    def find_direct(self, user_a: str, user_b: str) -> Optional[Conversation]:
        with self._read() as conn:
            row = conn.execute(
                f"""
                SELECT {_CONVERSATION_COLUMNS} FROM conversations
                WHERE kind = 'direct' AND direct_key = ?
                ORDER BY created_at ASC
                LIMIT 1
                """,
                [direct_key(user_a, user_b)],
            ).fetchone()
            if row is None:
                return None
            return self._hydrate(conn, [row])[0]

    def list_conversations(self, user_id: str) -> List[Conversation]:
        with self._read() as conn:
            rows = conn.execute(
                f"""
                SELECT {_CONVERSATION_COLUMNS} FROM conversations
                WHERE id IN (
                    SELECT conversation_id FROM conversation_members WHERE user_id = ?
                )
                ORDER BY updated_at DESC, id
                """,
                [user_id],
            ).fetchall()
            return self._hydrate(conn, rows)

    def update_conversation(self, conversation: Conversation) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE conversations
                SET title = ?, last_message_id = ?, updated_at = ?
                WHERE id = ?
                """,
                [
                    conversation.title, conversation.last_message_id,
                    conversation.updated_at, conversation.id,
                ],
            )
            conn.execute(
                "DELETE FROM conversation_members WHERE conversation_id = ?",
                [conversation.id],
            )
            self._write_members(conn, conversation)

    def set_summary(
        self, conversation_id: str, last_message_id: Optional[str], updated_at: datetime
    ) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE conversations SET last_message_id = ?, updated_at = ? WHERE id = ?",
                [last_message_id, updated_at, conversation_id],
            )

    def delete_conversation(self, conversation_id: str) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM message_reads WHERE conversation_id = ?", [conversation_id])
            conn.execute("DELETE FROM messages WHERE conversation_id = ?", [conversation_id])
            conn.execute(
                "DELETE FROM conversation_members WHERE conversation_id = ?", [conversation_id]
            )
            conn.execute("DELETE FROM conversations WHERE id = ?", [conversation_id])

    # -----------------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------------

    def insert_message(self, message: Message) -> None:
        media_url = message.media.url if message.media else None
        media_kind = message.media.kind.value if message.media else None
        with self._transaction() as conn:
            conn.execute(
                f"""
                INSERT INTO messages ({_MESSAGE_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    message.id, message.conversation_id, message.sender_id, message.body,
                    media_url, media_kind, message.is_system, message.created_at,
                ],
            )
            for user_id in dict.fromkeys(message.read_by):
                conn.execute(
                    """
                    INSERT INTO message_reads (message_id, conversation_id, user_id, read_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    [message.id, message.conversation_id, user_id, message.created_at],
                )

    def get_messages(self, message_ids: Sequence[str]) -> Dict[str, Message]:
        ids = [m for m in dict.fromkeys(message_ids) if m]
        if not ids:
            return {}
        with self._read() as conn:
            rows = conn.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE list_contains(?, id)",
                [ids],
            ).fetchall()
            messages = self._messages_from_rows(conn, rows)
        return {m.id: m for m in messages}

    def latest_message(self, conversation_id: str) -> Optional[Message]:
        with self._read() as conn:
            rows = conn.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM messages
                WHERE conversation_id = ?
                ORDER BY seq DESC
                LIMIT 1
                """,
                [conversation_id],
            ).fetchall()
            messages = self._messages_from_rows(conn, rows)
        return messages[0] if messages else None

    def list_messages(
        self,
        conversation_id: str,
        before: Optional[datetime] = None,
        limit: Optional[int] = None,
        before_id: Optional[str] = None,
    ) -> List[Message]:
        query = f"SELECT {_MESSAGE_COLUMNS}, seq FROM messages WHERE conversation_id = ?"
        params: list = [conversation_id]
        if before is not None:
            query += " AND created_at < ?"
            params.append(before)
        if before_id is not None:
            query += (
                " AND seq < (SELECT seq FROM messages WHERE id = ? AND conversation_id = ?)"
            )
            params.extend([before_id, conversation_id])
        if limit is not None:
            # Newest page first, flipped back to commit order below
            query += " ORDER BY seq DESC LIMIT ?"
            params.append(limit)
        else:
            query += " ORDER BY seq ASC"

        with self._read() as conn:
            rows = conn.execute(query, params).fetchall()
            if limit is not None:
                rows = list(reversed(rows))
            return self._messages_from_rows(conn, [r[:-1] for r in rows])

    def mark_read(self, conversation_id: str, user_id: str) -> int:
        with self._transaction() as conn:
            inserted = conn.execute(
                """
                INSERT INTO message_reads (message_id, conversation_id, user_id, read_at)
                SELECT m.id, m.conversation_id, ?, ?
                FROM messages m
                WHERE m.conversation_id = ?
                  AND m.sender_id <> ?
                  AND NOT EXISTS (
                      SELECT 1 FROM message_reads r
                      WHERE r.message_id = m.id AND r.user_id = ?
                  )
                RETURNING message_id
                """,
                [user_id, utcnow(), conversation_id, user_id, user_id],
            ).fetchall()
        return len(inserted)

    def unread_count(self, conversation_id: str, user_id: str) -> int:
        with self._read() as conn:
            row = conn.execute(
                """
                SELECT count(*) FROM messages m
                WHERE m.conversation_id = ?
                  AND m.sender_id <> ?
                  AND NOT EXISTS (
                      SELECT 1 FROM message_reads r
                      WHERE r.message_id = m.id AND r.user_id = ?
                  )
                """,
                [conversation_id, user_id, user_id],
            ).fetchone()
        return int(row[0])

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    @staticmethod
    def _write_members(conn: duckdb.DuckDBPyConnection, conversation: Conversation) -> None:
        for position, user_id in enumerate(conversation.participant_ids):
            conn.execute(
                """
                INSERT INTO conversation_members
                  (conversation_id, user_id, position, is_admin, hidden, has_left)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    conversation.id, user_id, position,
                    user_id in conversation.admin_ids,
                    user_id in conversation.hidden_for,
                    user_id in conversation.left_by,
                ],
            )

    @staticmethod
    def _hydrate(conn: duckdb.DuckDBPyConnection, rows: list) -> List[Conversation]:
        if not rows:
            return []
        ids = [r[0] for r in rows]
        member_rows = conn.execute(
            """
            SELECT conversation_id, user_id, is_admin, hidden, has_left
            FROM conversation_members
            WHERE list_contains(?, conversation_id)
            ORDER BY conversation_id, position
            """,
            [ids],
        ).fetchall()

        members: Dict[str, list] = {}
        for conversation_id, user_id, is_admin, hidden, has_left in member_rows:
            members.setdefault(conversation_id, []).append((user_id, is_admin, hidden, has_left))

        conversations = []
        for id_, kind, title, last_message_id, created_at, updated_at in rows:
            entries = members.get(id_, [])
            conversations.append(Conversation(
                id=id_,
                kind=ConversationKind(kind),
                title=title,
                participant_ids=[e[0] for e in entries],
                admin_ids=[e[0] for e in entries if e[1]],
                hidden_for=[e[0] for e in entries if e[2]],
                left_by=[e[0] for e in entries if e[3]],
                last_message_id=last_message_id,
                created_at=created_at,
                updated_at=updated_at,
            ))
        return conversations

    @staticmethod
    def _messages_from_rows(conn: duckdb.DuckDBPyConnection, rows: list) -> List[Message]:
        if not rows:
            return []
        ids = [r[0] for r in rows]
        read_rows = conn.execute(
            """
            SELECT message_id, user_id FROM message_reads
            WHERE list_contains(?, message_id)
            ORDER BY read_at, user_id
            """,
            [ids],
        ).fetchall()
        read_by: Dict[str, List[str]] = {}
        for message_id, user_id in read_rows:
            read_by.setdefault(message_id, []).append(user_id)

        messages = []
        for id_, conversation_id, sender_id, body, media_url, media_kind, is_system, created_at in rows:
            media = MediaRef(url=media_url, kind=media_kind) if media_url else None
            messages.append(Message(
                id=id_,
                conversation_id=conversation_id,
                sender_id=sender_id,
                body=body,
                media=media,
                read_by=read_by.get(id_, []),
                is_system=is_system,
                created_at=created_at,
            ))
        return messages
