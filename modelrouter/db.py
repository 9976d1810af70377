import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import aiosqlite


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class Database:
    """Conversation/message/attachment storage consumed by the HTTP layer."""

    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS conversations(
                    id TEXT PRIMARY KEY,
                    title TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS messages(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    conversation_id TEXT,
                    role TEXT,
                    content TEXT,
                    attachment_ids_json TEXT,
                    metadata_json TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS attachments(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    conversation_id TEXT,
                    filename TEXT,
                    storage_path TEXT,
                    mime TEXT,
                    size_bytes INTEGER,
                    extracted_text TEXT,
                    created_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, id);
                """
            )
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(query, params)
            await db.commit()

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    async def create_conversation(self, title: Optional[str] = None) -> dict:
        convo_id = uuid.uuid4().hex
        created_at = utc_now()
        await self.execute(
            "INSERT INTO conversations(id, title, created_at, updated_at) VALUES (?,?,?,?)",
            (convo_id, title or "New conversation", created_at, created_at),
        )
        return {"id": convo_id, "title": title or "New conversation", "created_at": created_at, "updated_at": created_at}

    async def get_conversation(self, conversation_id: str) -> Optional[dict]:
        row = await self.fetchone(
            "SELECT id, title, created_at, updated_at FROM conversations WHERE id=?",
            (conversation_id,),
        )
        return dict(row) if row else None

    async def list_conversations(self) -> List[dict]:
        rows = await self.fetchall("SELECT id, title, created_at, updated_at FROM conversations ORDER BY updated_at DESC")
        return [dict(r) for r in rows]

    async def touch_conversation(self, conversation_id: str, updated_at: Optional[str] = None) -> None:
        await self.execute(
            "UPDATE conversations SET updated_at=? WHERE id=?",
            (updated_at or utc_now(), conversation_id),
        )

    async def add_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        attachment_ids: Optional[Iterable[int]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> dict:
        created_at = utc_now()
        ids = list(attachment_ids or [])
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "INSERT INTO messages(conversation_id, role, content, attachment_ids_json, metadata_json, created_at) "
                "VALUES (?,?,?,?,?,?)",
                (conversation_id, role, content, json.dumps(ids), json.dumps(metadata or {}), created_at),
            )
            await db.commit()
            message_id = cursor.lastrowid
        await self.touch_conversation(conversation_id, updated_at=created_at)
        return {
            "id": message_id,
            "conversation_id": conversation_id,
            "role": role,
            "content": content,
            "attachment_ids": ids,
            "metadata": metadata or {},
            "created_at": created_at,
        }

    def _message_row(self, row: aiosqlite.Row) -> dict:
        return {
            "id": row["id"],
            "conversation_id": row["conversation_id"],
            "role": row["role"],
            "content": row["content"],
            "attachment_ids": json.loads(row["attachment_ids_json"] or "[]"),
            "metadata": json.loads(row["metadata_json"] or "{}"),
            "created_at": row["created_at"],
        }

    async def list_messages(self, conversation_id: str, limit: int = 200) -> List[dict]:
        """Most recent `limit` messages, oldest first."""
        rows = await self.fetchall(
            "SELECT id, conversation_id, role, content, attachment_ids_json, metadata_json, created_at "
            "FROM messages WHERE conversation_id=? ORDER BY id DESC LIMIT ?",
            (conversation_id, limit),
        )
        return [self._message_row(r) for r in reversed(rows)]

    async def add_attachment(
        self,
        conversation_id: Optional[str],
        filename: str,
        storage_path: str,
        mime: str,
        size_bytes: int,
        extracted_text: Optional[str] = None,
    ) -> int:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "INSERT INTO attachments(conversation_id, filename, storage_path, mime, size_bytes, extracted_text, created_at) "
                "VALUES (?,?,?,?,?,?,?)",
                (conversation_id or "", filename, storage_path, mime, size_bytes, extracted_text, utc_now()),
            )
            await db.commit()
            return cursor.lastrowid

    async def get_attachment(self, attachment_id: int) -> Optional[dict]:
        row = await self.fetchone(
            "SELECT id, conversation_id, filename, storage_path, mime, size_bytes, extracted_text, created_at "
            "FROM attachments WHERE id=?",
            (attachment_id,),
        )
        return dict(row) if row else None

    async def get_attachments(self, attachment_ids: Iterable[int]) -> List[dict]:
        found: List[dict] = []
        seen = set()
        for attachment_id in attachment_ids:
            if attachment_id in seen:
                continue
            seen.add(attachment_id)
            record = await self.get_attachment(attachment_id)
            if record:
                found.append(record)
        return found
