"""PostgreSQL implementation of MessageRepository."""
from __future__ import annotations

import asyncpg

from ccjsonl.date_utils import utc_now_iso
from ccjsonl.db.repositories.postgres.status import affected_rows
from ccjsonl.models import Message


class PostgresMessageRepository:
    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def upsert(self, message: Message) -> bool:
        status = await self.db.execute(
            """INSERT INTO messages (
                id, session_id, source_key, line_index, uuid, parent_uuid,
                role, content, cwd, timestamp, raw_payload, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
            ON CONFLICT(session_id, source_key) DO NOTHING""",
            message.id, message.sessionId, message.sourceKey, message.lineIndex,
            message.uuid, message.parentUuid, message.role, message.content,
            message.cwd, message.timestamp, message.rawPayload, utc_now_iso(),
        )
        return affected_rows(status) > 0

    async def list_by_session(self, session_id: str) -> list[Message]:
        rows = await self.db.fetch(
            """SELECT * FROM messages WHERE session_id = $1
            ORDER BY timestamp ASC, line_index ASC""",
            session_id,
        )
        return [self._row_to_message(r) for r in rows]

    async def count_by_session(self, session_id: str) -> int:
        return await self.db.fetchval(
            "SELECT COUNT(*) FROM messages WHERE session_id = $1", session_id
        ) or 0

    async def first_user_message(self, session_id: str) -> Message | None:
        row = await self.db.fetchrow(
            """SELECT * FROM messages
            WHERE session_id = $1 AND role = 'user'
              AND content IS NOT NULL AND trim(content) != '' AND left(ltrim(content), 1) != '<'
            ORDER BY timestamp ASC, line_index ASC LIMIT 1""",
            session_id,
        )
        return self._row_to_message(row) if row else None

    def _row_to_message(self, row) -> Message:
        return Message(
            id=row["id"],
            sessionId=row["session_id"],
            sourceKey=row["source_key"],
            lineIndex=row["line_index"] or 0,
            uuid=row["uuid"] or "",
            parentUuid=row["parent_uuid"],
            role=row["role"],
            content=row["content"],
            cwd=row["cwd"] or "",
            timestamp=row["timestamp"],
            rawPayload=row["raw_payload"],
        )
