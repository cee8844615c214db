"""PostgreSQL implementation of SessionRepository."""
from __future__ import annotations

import asyncpg

from ccjsonl.date_utils import utc_now_iso
from ccjsonl.db.repositories.postgres.status import affected_rows
from ccjsonl.errors import RepositoryError
from ccjsonl.models import Session

_TOUCH_SQL = """
UPDATE sessions SET
    cwd = CASE
        WHEN $3::text IS NOT NULL AND $3::text != ''
             AND ($2::text IS NULL OR last_message_at IS NULL OR $2::text >= last_message_at)
        THEN $3::text ELSE cwd END,
    last_message_at = CASE
        WHEN $2::text IS NOT NULL AND (last_message_at IS NULL OR $2::text > last_message_at)
        THEN $2::text ELSE last_message_at END,
    status = COALESCE($4::text, status),
    updated_at = GREATEST(updated_at, $5::text)
WHERE id = $1
"""


class PostgresSessionRepository:
    """PostgreSQL-backed session rows."""

    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def upsert(
        self,
        session_id: str,
        project_id: str,
        *,
        name: str | None = None,
        cwd: str = "",
        source_file: str = "",
    ) -> Session:
        now = utc_now_iso()
        await self.db.execute(
            """INSERT INTO sessions (
                id, project_id, name, cwd, status, source_file,
                created_at, updated_at, last_message_at
            ) VALUES ($1, $2, $3, $4, 'active', $5, $6, $7, NULL)
            ON CONFLICT(id) DO NOTHING""",
            session_id, project_id, name, cwd, source_file, now, now,
        )
        session = await self.get(session_id)
        if session is None:
            raise RepositoryError(f"Session {session_id!r} missing after upsert")
        return session

    async def get(self, session_id: str) -> Session | None:
        row = await self.db.fetchrow("SELECT * FROM sessions WHERE id = $1", session_id)
        return self._row_to_session(row) if row else None

    async def list_by_project(self, project_id: str) -> list[Session]:
        rows = await self.db.fetch(
            """SELECT * FROM sessions WHERE project_id = $1
            ORDER BY last_message_at DESC NULLS LAST, id""",
            project_id,
        )
        return [self._row_to_session(r) for r in rows]

    async def touch(
        self,
        session_id: str,
        *,
        timestamp: str | None,
        cwd: str | None = None,
        status: str | None = None,
    ) -> None:
        await self.db.execute(
            _TOUCH_SQL, session_id, timestamp or None, cwd, status, utc_now_iso()
        )

    async def update_name(self, session_id: str, name: str, *, overwrite: bool) -> bool:
        if overwrite:
            query = "UPDATE sessions SET name = $1, updated_at = $2 WHERE id = $3"
        else:
            query = (
                "UPDATE sessions SET name = $1, updated_at = $2 "
                "WHERE id = $3 AND (name IS NULL OR name = '')"
            )
        status = await self.db.execute(query, name, utc_now_iso(), session_id)
        return affected_rows(status) > 0

    def _row_to_session(self, row) -> Session:
        return Session(
            id=row["id"],
            projectId=row["project_id"],
            name=row["name"],
            cwd=row["cwd"] or "",
            status=row["status"] or "active",
            sourceFile=row["source_file"] or "",
            createdAt=row["created_at"],
            updatedAt=row["updated_at"],
            lastMessageAt=row["last_message_at"],
        )
