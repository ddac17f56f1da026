from __future__ import annotations

import json
import sqlite3
from typing import Any
from uuid import uuid4

from pydantic import TypeAdapter

from micro_x_chat_server.errors import SessionNotFoundError
from micro_x_chat_server.memory.events import EventEmitter, utc_now
from micro_x_chat_server.memory.store import MemoryStore
from micro_x_chat_server.models import ContentBlock, Message, Session, Usage

DEFAULT_SESSION_TITLE = "New Session"

_CONTENT_ADAPTER = TypeAdapter(list[ContentBlock])

# Columns `update_session` may change, keyed by Session field name.
_UPDATABLE_COLUMNS = {
    "workspace_id": "workspace_id",
    "preconfig_id": "preconfig_id",
    "title": "title",
    "status": "status",
    "selected_model": "selected_model",
    "selected_provider": "selected_provider",
}


class SessionManager:
    """Sessions and their messages. Message content is stored as an opaque JSON block list."""

    def __init__(self, store: MemoryStore, events: EventEmitter):
        self._store = store
        self._events = events

    def create_session(
        self,
        *,
        session_id: str | None = None,
        preconfig_id: str | None = None,
        title: str | None = None,
        workspace_id: str | None = None,
        metadata: dict | None = None,
    ) -> Session:
        sid = session_id or str(uuid4())
        now = utc_now()
        self._store.execute(
            """
            INSERT INTO sessions (id, workspace_id, preconfig_id, title, status, created_at, updated_at, metadata_json)
            VALUES (?, ?, ?, ?, 'active', ?, ?, ?)
            """,
            (
                sid,
                workspace_id,
                preconfig_id,
                title or DEFAULT_SESSION_TITLE,
                now,
                now,
                json.dumps(metadata, ensure_ascii=True) if metadata is not None else None,
            ),
        )
        self._store.commit()
        self._events.emit(sid, "session.created", {"session_id": sid, "preconfig_id": preconfig_id})
        return self.require_session(sid)

    def get_session(self, session_id: str) -> Session | None:
        row = self._store.execute(
            "SELECT * FROM sessions WHERE id = ? LIMIT 1",
            (session_id,),
        ).fetchone()
        return self._row_to_session(row) if row is not None else None

    def require_session(self, session_id: str) -> Session:
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def list_sessions(self, status: str | None = None, *, limit: int = 50) -> list[Session]:
        if status is None:
            rows = self._store.execute(
                "SELECT * FROM sessions ORDER BY updated_at DESC, created_at DESC LIMIT ?",
                (max(1, limit),),
            ).fetchall()
        else:
            rows = self._store.execute(
                "SELECT * FROM sessions WHERE status = ? ORDER BY updated_at DESC, created_at DESC LIMIT ?",
                (status, max(1, limit)),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def update_session(self, session_id: str, **changes: Any) -> Session:
        unknown = set(changes) - set(_UPDATABLE_COLUMNS)
        if unknown:
            raise ValueError(f"Cannot update session fields: {', '.join(sorted(unknown))}")
        self.require_session(session_id)

        assignments = [f"{_UPDATABLE_COLUMNS[name]} = ?" for name in changes]
        params: list[Any] = list(changes.values())
        assignments.append("updated_at = ?")
        params.extend([utc_now(), session_id])
        self._store.execute(
            f"UPDATE sessions SET {', '.join(assignments)} WHERE id = ?",
            tuple(params),
        )
        self._store.commit()
        return self.require_session(session_id)

    def add_usage(self, session_id: str, usage: Usage) -> Session:
        """Add one turn's token counts to the session's running totals."""
        self.require_session(session_id)
        self._store.execute(
            """
            UPDATE sessions
            SET prompt_tokens = prompt_tokens + ?,
                completion_tokens = completion_tokens + ?,
                total_tokens = total_tokens + ?,
                updated_at = ?
            WHERE id = ?
            """,
            (usage.prompt_tokens, usage.completion_tokens, usage.total_tokens, utc_now(), session_id),
        )
        self._store.commit()
        return self.require_session(session_id)

    def create_message(self, session_id: str, message: Message) -> Message:
        row = self._store.execute(
            "SELECT COALESCE(MAX(seq), 0) AS max_seq FROM messages WHERE session_id = ?",
            (session_id,),
        ).fetchone()
        next_seq = int(row["max_seq"]) + 1
        content_json = json.dumps([block.to_wire() for block in message.content], ensure_ascii=True)
        self._store.execute(
            """
            INSERT INTO messages (id, session_id, seq, role, content_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (message.id, session_id, next_seq, message.role, content_json, message.created_at),
        )
        self._store.execute(
            "UPDATE sessions SET updated_at = ? WHERE id = ?",
            (utc_now(), session_id),
        )
        self._store.commit()
        return message

    def list_messages(self, session_id: str) -> list[Message]:
        rows = self._store.execute(
            """
            SELECT id, role, content_json, created_at
            FROM messages
            WHERE session_id = ?
            ORDER BY created_at ASC, seq ASC
            """,
            (session_id,),
        ).fetchall()
        return [
            Message(
                id=row["id"],
                role=row["role"],
                content=_CONTENT_ADAPTER.validate_python(json.loads(row["content_json"])),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def _row_to_session(self, row: sqlite3.Row) -> Session:
        metadata = json.loads(row["metadata_json"]) if row["metadata_json"] else None
        return Session(
            id=row["id"],
            workspace_id=row["workspace_id"],
            preconfig_id=row["preconfig_id"],
            title=row["title"],
            status=row["status"],
            selected_model=row["selected_model"],
            selected_provider=row["selected_provider"],
            prompt_tokens=row["prompt_tokens"],
            completion_tokens=row["completion_tokens"],
            total_tokens=row["total_tokens"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            metadata=metadata if isinstance(metadata, dict) else None,
        )
