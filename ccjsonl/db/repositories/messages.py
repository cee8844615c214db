"""SQLite implementation of MessageRepository."""
from __future__ import annotations

import aiosqlite

from ccjsonl.date_utils import utc_now_iso
from ccjsonl.models import Message


class SqliteMessageRepository:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def upsert(self, message: Message) -> bool:
        """Insert a message keyed on (session_id, source_key).

        Returns False when the key already exists; the stored row is left untouched.
        """
        cur = await self.db.execute(
            """INSERT INTO messages (
                id, session_id, source_key, line_index, uuid, parent_uuid,
                role, content, cwd, timestamp, raw_payload, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(session_id, source_key) DO NOTHING""",
            (
                message.id, message.sessionId, message.sourceKey, message.lineIndex,
                message.uuid, message.parentUuid, message.role, message.content,
                message.cwd, message.timestamp, message.rawPayload, utc_now_iso(),
            ),
        )
        await self.db.commit()
        return cur.rowcount > 0

    async def list_by_session(self, session_id: str) -> list[Message]:
        async with self.db.execute(
            """SELECT * FROM messages WHERE session_id = ?
            ORDER BY timestamp ASC, line_index ASC""",
            (session_id,),
        ) as cur:
            rows = await cur.fetchall()
            return [self._row_to_message(r) for r in rows]

    async def count_by_session(self, session_id: str) -> int:
        async with self.db.execute(
            "SELECT COUNT(*) FROM messages WHERE session_id = ?", (session_id,)
        ) as cur:
            row = await cur.fetchone()
        return row[0] if row else 0

    async def first_user_message(self, session_id: str) -> Message | None:
        async with self.db.execute(
            """SELECT * FROM messages
            WHERE session_id = ? AND role = 'user'
              AND content IS NOT NULL AND trim(content) != '' AND substr(ltrim(content), 1, 1) != '<'
            ORDER BY timestamp ASC, line_index ASC LIMIT 1""",
            (session_id,),
        ) as cur:
            row = await cur.fetchone()
            return self._row_to_message(row) if row else None

    def _row_to_message(self, row) -> Message:
        d = dict(row)
        return Message(
            id=d["id"],
            sessionId=d["session_id"],
            sourceKey=d["source_key"],
            lineIndex=d["line_index"] or 0,
            uuid=d["uuid"] or "",
            parentUuid=d["parent_uuid"],
            role=d["role"],
            content=d["content"],
            cwd=d["cwd"] or "",
            timestamp=d["timestamp"],
            rawPayload=d["raw_payload"],
        )
