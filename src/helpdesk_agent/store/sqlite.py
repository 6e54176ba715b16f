"""SQLite-backed support store.

Every public method opens its own connection and runs as one transaction, so
the store can be shared by request handlers, orchestration runs and indexing
workers on different threads. Use a file path; ``:memory:`` would give every
call a fresh empty database.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import closing, contextmanager
from pathlib import Path
from typing import Any

from helpdesk_agent.errors import NotFoundError
from helpdesk_agent.store.records import (
    AgentProfile,
    Client,
    Conversation,
    Department,
    HttpToolDefinition,
    Message,
    User,
    utc_now,
)
from helpdesk_agent.types import Chunk, KnowledgeDocument

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS clients (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    language TEXT,
    timezone TEXT,
    data TEXT NOT NULL DEFAULT '{}'
);
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    display_name TEXT NOT NULL DEFAULT '',
    type TEXT NOT NULL DEFAULT 'agent',
    last_activity TEXT
);
CREATE TABLE IF NOT EXISTS departments (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    ai_agent_id INTEGER
);
CREATE TABLE IF NOT EXISTS conversations (
    id INTEGER PRIMARY KEY,
    client_id INTEGER,
    department_id INTEGER,
    channel_id TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'open',
    priority TEXT NOT NULL DEFAULT 'medium',
    custom_fields TEXT NOT NULL DEFAULT '{}',
    handle_by_bot INTEGER NOT NULL DEFAULT 1
);
CREATE TABLE IF NOT EXISTS assignments (
    conversation_id INTEGER NOT NULL,
    user_id TEXT NOT NULL,
    department_id INTEGER,
    PRIMARY KEY (conversation_id, user_id)
);
CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation_id INTEGER NOT NULL,
    body TEXT NOT NULL DEFAULT '',
    user_id TEXT,
    client_id INTEGER,
    is_system_message INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages (conversation_id, id);
CREATE TABLE IF NOT EXISTS tags (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE
);
CREATE TABLE IF NOT EXISTS conversation_tags (
    conversation_id INTEGER NOT NULL,
    tag_id INTEGER NOT NULL,
    PRIMARY KEY (conversation_id, tag_id)
);
CREATE TABLE IF NOT EXISTS kb_documents (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL DEFAULT '',
    excerpt TEXT NOT NULL DEFAULT '',
    body TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'draft'
);
CREATE TABLE IF NOT EXISTS kb_chunks (
    document_id TEXT NOT NULL,
    chunk_index INTEGER NOT NULL,
    content TEXT NOT NULL,
    token_count INTEGER NOT NULL,
    generation TEXT NOT NULL,
    indexed_at TEXT NOT NULL,
    PRIMARY KEY (document_id, chunk_index)
);
CREATE TABLE IF NOT EXISTS ai_agents (
    id INTEGER PRIMARY KEY,
    profile TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS ai_agent_tools (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    ai_agent_id INTEGER NOT NULL,
    definition TEXT NOT NULL
);
"""


class SupportStore:
    """Conversations, clients, agents and knowledge-base rows in one SQLite file."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        with self._connect() as conn:
            conn.executescript(_SCHEMA)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        with closing(sqlite3.connect(self.path, timeout=30.0)) as conn:
            conn.row_factory = sqlite3.Row
            with conn:
                yield conn

    # Conversations

    def save_conversation(self, conversation: Conversation) -> Conversation:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO conversations"
                "(id, client_id, department_id, channel_id, status, priority, custom_fields, handle_by_bot)"
                " VALUES(?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    conversation.id,
                    conversation.client_id,
                    conversation.department_id,
                    conversation.channel_id,
                    conversation.status,
                    conversation.priority,
                    json.dumps(conversation.custom_fields),
                    int(conversation.handle_by_bot),
                ),
            )
        return conversation

    def get_conversation(self, conversation_id: int) -> Conversation:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
        if row is None:
            raise NotFoundError(f"Conversation not found: {conversation_id}")
        return Conversation(
            id=row["id"],
            client_id=row["client_id"],
            department_id=row["department_id"],
            channel_id=row["channel_id"],
            status=row["status"],
            priority=row["priority"],
            custom_fields=_load_json(row["custom_fields"]),
            handle_by_bot=bool(row["handle_by_bot"]),
        )

    def set_conversation_status(self, conversation_id: int, status: str) -> None:
        self._update_conversation(conversation_id, "status", status)

    def set_conversation_priority(self, conversation_id: int, priority: str) -> None:
        self._update_conversation(conversation_id, "priority", priority)

    def merge_user_info(self, conversation_id: int, info: dict[str, Any]) -> dict[str, Any]:
        """Merge `info` into ``custom_fields["user_info"]``; later keys win."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT custom_fields FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Conversation not found: {conversation_id}")
            custom_fields = _load_json(row["custom_fields"])
            existing = custom_fields.get("user_info")
            merged = {**existing, **info} if isinstance(existing, dict) else dict(info)
            custom_fields["user_info"] = merged
            conn.execute(
                "UPDATE conversations SET custom_fields = ? WHERE id = ?",
                (json.dumps(custom_fields), conversation_id),
            )
        return custom_fields

    def _update_conversation(self, conversation_id: int, column: str, value: Any) -> None:
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE conversations SET {column} = ? WHERE id = ?", (value, conversation_id)
            )
        if cursor.rowcount == 0:
            raise NotFoundError(f"Conversation not found: {conversation_id}")

    # Clients

    def save_client(self, client: Client) -> Client:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO clients(id, name, language, timezone, data)"
                " VALUES(?, ?, ?, ?, ?)",
                (client.id, client.name, client.language, client.timezone, json.dumps(client.data)),
            )
        return client

    def get_client(self, client_id: int) -> Client | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM clients WHERE id = ?", (client_id,)).fetchone()
        if row is None:
            return None
        return Client(
            id=row["id"],
            name=row["name"],
            language=row["language"],
            timezone=row["timezone"],
            data=_load_json(row["data"]),
        )

    def merge_client_data(
        self, client_id: int, data: dict[str, Any], *, name: str | None = None
    ) -> dict[str, Any]:
        """Merge `data` into the client's stored data and optionally rename it."""
        with self._connect() as conn:
            row = conn.execute("SELECT data FROM clients WHERE id = ?", (client_id,)).fetchone()
            if row is None:
                raise NotFoundError(f"Client not found: {client_id}")
            merged = {**_load_json(row["data"]), **data}
            conn.execute(
                "UPDATE clients SET data = ? WHERE id = ?", (json.dumps(merged), client_id)
            )
            if name:
                conn.execute("UPDATE clients SET name = ? WHERE id = ?", (name, client_id))
        return merged

    # Users and assignments

    def save_user(self, user: User) -> User:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO users(id, name, display_name, type, last_activity)"
                " VALUES(?, ?, ?, ?, ?)",
                (
                    user.id,
                    user.name,
                    user.display_name,
                    user.type,
                    user.last_activity.isoformat() if user.last_activity else None,
                ),
            )
        return user

    def get_user(self, user_id: str) -> User | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return _user_from_row(row) if row is not None else None

    def assign_user(
        self, conversation_id: int, user_id: str, department_id: int | None = None
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO assignments(conversation_id, user_id, department_id)"
                " VALUES(?, ?, ?)",
                (conversation_id, user_id, department_id),
            )

    def assigned_users(self, conversation_id: int) -> list[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT u.* FROM assignments a JOIN users u ON u.id = a.user_id"
                " WHERE a.conversation_id = ? ORDER BY u.id",
                (conversation_id,),
            ).fetchall()
        return [_user_from_row(row) for row in rows]

    # Messages

    def add_message(self, message: Message) -> Message:
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO messages(conversation_id, body, user_id, client_id, is_system_message, created_at)"
                " VALUES(?, ?, ?, ?, ?, ?)",
                (
                    message.conversation_id,
                    message.body,
                    message.user_id,
                    message.client_id,
                    int(message.is_system_message),
                    message.created_at.isoformat(),
                ),
            )
        return message.model_copy(update={"id": cursor.lastrowid})

    def recent_messages(self, conversation_id: int, limit: int) -> list[Message]:
        """Return the last `limit` messages in chronological order."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT m.*, u.name AS u_name, u.display_name AS u_display_name,"
                " u.type AS u_type, u.last_activity AS u_last_activity"
                " FROM messages m LEFT JOIN users u ON u.id = m.user_id"
                " WHERE m.conversation_id = ? ORDER BY m.id DESC LIMIT ?",
                (conversation_id, limit),
            ).fetchall()
        return [_message_from_row(row) for row in reversed(rows)]

    def recent_client_messages(self, conversation_id: int, limit: int) -> list[Message]:
        """Return the last `limit` client-authored messages, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT m.*, NULL AS u_name FROM messages m"
                " WHERE m.conversation_id = ? AND m.client_id IS NOT NULL"
                " ORDER BY m.id DESC LIMIT ?",
                (conversation_id, limit),
            ).fetchall()
        return [_message_from_row(row) for row in rows]

    # Tags

    def get_or_create_tag(self, name: str) -> int:
        with self._connect() as conn:
            conn.execute("INSERT OR IGNORE INTO tags(name) VALUES(?)", (name,))
            row = conn.execute("SELECT id FROM tags WHERE name = ?", (name,)).fetchone()
        return int(row["id"])

    def link_tag(self, conversation_id: int, tag_id: int) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO conversation_tags(conversation_id, tag_id) VALUES(?, ?)",
                (conversation_id, tag_id),
            )

    def conversation_tags(self, conversation_id: int) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT t.name FROM conversation_tags ct JOIN tags t ON t.id = ct.tag_id"
                " WHERE ct.conversation_id = ? ORDER BY t.name",
                (conversation_id,),
            ).fetchall()
        return [row["name"] for row in rows]

    # Departments and agents

    def save_department(self, department: Department) -> Department:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO departments(id, name, ai_agent_id) VALUES(?, ?, ?)",
                (department.id, department.name, department.ai_agent_id),
            )
        return department

    def get_department(self, department_id: int) -> Department | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM departments WHERE id = ?", (department_id,)
            ).fetchone()
        if row is None:
            return None
        return Department(id=row["id"], name=row["name"], ai_agent_id=row["ai_agent_id"])

    def save_agent(self, profile: AgentProfile) -> AgentProfile:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO ai_agents(id, profile) VALUES(?, ?)",
                (profile.id, profile.model_dump_json()),
            )
        return profile

    def get_agent(self, agent_id: int) -> AgentProfile | None:
        with self._connect() as conn:
            row = conn.execute("SELECT profile FROM ai_agents WHERE id = ?", (agent_id,)).fetchone()
        return AgentProfile.model_validate_json(row["profile"]) if row is not None else None

    def add_http_tool(self, agent_id: int, tool: HttpToolDefinition) -> HttpToolDefinition:
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO ai_agent_tools(ai_agent_id, definition) VALUES(?, ?)",
                (agent_id, tool.model_dump_json(exclude={"id"})),
            )
        return tool.model_copy(update={"id": cursor.lastrowid})

    def http_tools(self, agent_id: int) -> list[HttpToolDefinition]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, definition FROM ai_agent_tools WHERE ai_agent_id = ? ORDER BY id",
                (agent_id,),
            ).fetchall()
        return [
            HttpToolDefinition.model_validate_json(row["definition"]).model_copy(
                update={"id": row["id"]}
            )
            for row in rows
        ]

    # Knowledge base

    def save_document(self, document: KnowledgeDocument) -> KnowledgeDocument:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO kb_documents(id, title, excerpt, body, status)"
                " VALUES(?, ?, ?, ?, ?)",
                (document.id, document.title, document.excerpt, document.body, document.status),
            )
        return document

    def get_document(self, document_id: str) -> KnowledgeDocument | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM kb_documents WHERE id = ?", (document_id,)
            ).fetchone()
        if row is None:
            return None
        return KnowledgeDocument(
            id=row["id"],
            title=row["title"],
            excerpt=row["excerpt"],
            body=row["body"],
            status=row["status"],
        )

    def published_document_ids(self) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id FROM kb_documents WHERE status = 'published' ORDER BY id"
            ).fetchall()
        return [row["id"] for row in rows]

    def replace_chunks(self, document_id: str, chunks: list[Chunk], generation: str) -> None:
        """Swap a document's chunk rows for a new set in one transaction."""
        indexed_at = utc_now().isoformat()
        with self._connect() as conn:
            conn.execute("DELETE FROM kb_chunks WHERE document_id = ?", (document_id,))
            conn.executemany(
                "INSERT INTO kb_chunks(document_id, chunk_index, content, token_count, generation, indexed_at)"
                " VALUES(?, ?, ?, ?, ?, ?)",
                [
                    (document_id, chunk.index, chunk.content, chunk.token_count, generation, indexed_at)
                    for chunk in chunks
                ],
            )

    def delete_chunks(self, document_id: str) -> int:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM kb_chunks WHERE document_id = ?", (document_id,))
        return cursor.rowcount

    def chunks(self, document_id: str) -> list[Chunk]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT chunk_index, content, token_count FROM kb_chunks"
                " WHERE document_id = ? ORDER BY chunk_index",
                (document_id,),
            ).fetchall()
        return [
            Chunk(content=row["content"], index=row["chunk_index"], token_count=row["token_count"])
            for row in rows
        ]

    def indexed_documents(self) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT c.document_id, COALESCE(d.title, '') AS title,"
                " COUNT(*) AS chunk_count, SUM(c.token_count) AS total_tokens,"
                " MAX(c.indexed_at) AS indexed_at"
                " FROM kb_chunks c LEFT JOIN kb_documents d ON d.id = c.document_id"
                " GROUP BY c.document_id ORDER BY c.document_id"
            ).fetchall()
        return [dict(row) for row in rows]

    def chunk_stats(self) -> dict[str, int]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(DISTINCT document_id) AS documents, COUNT(*) AS chunks,"
                " COALESCE(SUM(token_count), 0) AS tokens FROM kb_chunks"
            ).fetchone()
        return {
            "indexed_documents": int(row["documents"]),
            "total_chunks": int(row["chunks"]),
            "total_tokens": int(row["tokens"]),
        }


def _load_json(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Discarding malformed JSON column value")
        return {}
    return value if isinstance(value, dict) else {}


def _user_from_row(row: sqlite3.Row) -> User:
    return User(
        id=row["id"],
        name=row["name"],
        display_name=row["display_name"],
        type=row["type"],
        last_activity=row["last_activity"],
    )


def _message_from_row(row: sqlite3.Row) -> Message:
    user = None
    if row["user_id"] is not None and row["u_name"] is not None:
        user = User(
            id=row["user_id"],
            name=row["u_name"],
            display_name=row["u_display_name"],
            type=row["u_type"],
            last_activity=row["u_last_activity"],
        )
    return Message(
        id=row["id"],
        conversation_id=row["conversation_id"],
        body=row["body"],
        user_id=row["user_id"],
        client_id=row["client_id"],
        is_system_message=bool(row["is_system_message"]),
        created_at=row["created_at"],
        user=user,
    )
