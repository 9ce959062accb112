from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from .database import Database
from .errors import NotFoundError, ValidationError
from .models import ROLES, Conversation, ExtractedText, Message, TextLayer

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    # Fixed precision keeps lexical order equal to chronological order.
    return datetime.now(tz=timezone.utc).isoformat(timespec="microseconds")


def _require(value: Optional[str], field: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"Missing required field: {field}")
    return value


def _conversation_from_row(row: sqlite3.Row) -> Conversation:
    return Conversation(
        id=row["conversation_id"],
        document_id=row["document_id"],
        document_name=row["document_name"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _message_from_row(row: sqlite3.Row) -> Message:
    return Message(
        id=row["message_id"],
        conversation_id=row["conversation_id"],
        role=row["role"],
        content=row["content"],
        created_at=row["created_at"],
    )


class ConversationStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    def create_conversation(self, document_id: str, document_name: str) -> Conversation:
        _require(document_id, "document_id")
        _require(document_name, "document_name")
        conversation_id = str(uuid.uuid4())
        now = _now_iso()
        with self.db.connect(write=True) as conn:
            conn.execute(
                """
                INSERT INTO conversations (conversation_id, document_id, document_name, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (conversation_id, document_id, document_name, now, now),
            )
        logger.info("Created conversation %s for document %s", conversation_id, document_id)
        return Conversation(
            id=conversation_id,
            document_id=document_id,
            document_name=document_name,
            created_at=now,
            updated_at=now,
        )

    def list_conversations(self) -> List[Conversation]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM conversations ORDER BY updated_at DESC, rowid DESC"
            ).fetchall()
        return [_conversation_from_row(row) for row in rows]

    def list_conversations_for_document(self, document_id: str) -> List[Conversation]:
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM conversations
                WHERE document_id = ?
                ORDER BY updated_at DESC, rowid DESC
                """,
                (document_id,),
            ).fetchall()
        return [_conversation_from_row(row) for row in rows]

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM conversations WHERE conversation_id = ?", (conversation_id,)
            ).fetchone()
        if not row:
            return None
        return _conversation_from_row(row)

    def append_message(self, conversation_id: str, role: str, content: str) -> Message:
        if role not in ROLES:
            raise ValidationError(f"role must be one of: {', '.join(ROLES)}")
        _require(content, "content")
        message_id = str(uuid.uuid4())
        with self.db.connect(write=True) as conn:
            row = conn.execute(
                "SELECT updated_at FROM conversations WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()
            if not row:
                raise NotFoundError(f"Conversation {conversation_id} not found")
            # Never stamp a message earlier than the last one, even if the
            # wall clock stepped backwards.
            created_at = max(_now_iso(), row["updated_at"])
            conn.execute(
                """
                INSERT INTO messages (message_id, conversation_id, role, content, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (message_id, conversation_id, role, content, created_at),
            )
            conn.execute(
                "UPDATE conversations SET updated_at = ? WHERE conversation_id = ?",
                (created_at, conversation_id),
            )
        return Message(
            id=message_id,
            conversation_id=conversation_id,
            role=role,
            content=content,
            created_at=created_at,
        )

    def list_messages(self, conversation_id: str) -> List[Message]:
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM messages
                WHERE conversation_id = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (conversation_id,),
            ).fetchall()
        return [_message_from_row(row) for row in rows]


def document_id_for(file_name: str, owner: Optional[str] = None) -> str:
    """Stable document id for an uploaded file, optionally scoped to its owner."""
    _require(file_name, "file_name")
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{owner or 'anonymous'}:{file_name}"))


class DocumentRegistry:
    """Keeps the extracted text of each loaded document available to search."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def register_document(self, document_id: str, name: str, extracted: ExtractedText) -> None:
        _require(document_id, "document_id")
        _require(name, "name")
        fallback_json = extracted.fallback.model_dump_json() if extracted.fallback else None
        with self.db.connect(write=True) as conn:
            conn.execute(
                """
                INSERT INTO documents (document_id, name, primary_json, fallback_json, registered_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(document_id) DO UPDATE SET
                    name = excluded.name,
                    primary_json = excluded.primary_json,
                    fallback_json = excluded.fallback_json,
                    registered_at = excluded.registered_at
                """,
                (document_id, name, extracted.primary.model_dump_json(), fallback_json, _now_iso()),
            )

    def get_document(self, document_id: str) -> Optional[Tuple[str, ExtractedText]]:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM documents WHERE document_id = ?", (document_id,)
            ).fetchone()
        if not row:
            return None
        fallback = None
        if row["fallback_json"]:
            fallback = TextLayer.model_validate(json.loads(row["fallback_json"]))
        extracted = ExtractedText(
            primary=TextLayer.model_validate(json.loads(row["primary_json"])),
            fallback=fallback,
        )
        return row["name"], extracted
