"""SQLite implementation of SessionRepository."""
from __future__ import annotations

import aiosqlite

from ccjsonl.date_utils import utc_now_iso
from ccjsonl.errors import RepositoryError
from ccjsonl.models import Session

# last_message_at only moves forward; cwd follows whichever message is newest.
# SET expressions all see the pre-update row.
_TOUCH_SQL = """
UPDATE sessions SET
    cwd = CASE
        WHEN :cwd IS NOT NULL AND :cwd != ''
             AND (:ts IS NULL OR last_message_at IS NULL OR :ts >= last_message_at)
        THEN :cwd ELSE cwd END,
    last_message_at = CASE
        WHEN :ts IS NOT NULL AND (last_message_at IS NULL OR :ts > last_message_at)
        THEN :ts ELSE last_message_at END,
    status = COALESCE(:status, status),
    updated_at = CASE WHEN :now > updated_at THEN :now ELSE updated_at END
WHERE id = :id
"""


class SqliteSessionRepository:
    """SQLite-backed session rows, one per transcript file."""

    def __init__(self, db: aiosqlite.Connection):
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
            ) VALUES (?, ?, ?, ?, 'active', ?, ?, ?, NULL)
            ON CONFLICT(id) DO NOTHING""",
            (session_id, project_id, name, cwd, source_file, now, now),
        )
        await self.db.commit()
        session = await self.get(session_id)
        if session is None:
            raise RepositoryError(f"Session {session_id!r} missing after upsert")
        return session

    async def get(self, session_id: str) -> Session | None:
        async with self.db.execute(
            "SELECT * FROM sessions WHERE id = ?", (session_id,)
        ) as cur:
            row = await cur.fetchone()
            return self._row_to_session(row) if row else None

    async def list_by_project(self, project_id: str) -> list[Session]:
        async with self.db.execute(
            """SELECT * FROM sessions WHERE project_id = ?
            ORDER BY last_message_at DESC, id""",
            (project_id,),
        ) as cur:
            rows = await cur.fetchall()
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
            _TOUCH_SQL,
            {
                "id": session_id,
                "ts": timestamp or None,
                "cwd": cwd,
                "status": status,
                "now": utc_now_iso(),
            },
        )
        await self.db.commit()

    async def update_name(self, session_id: str, name: str, *, overwrite: bool) -> bool:
        if overwrite:
            sql = "UPDATE sessions SET name = ?, updated_at = ? WHERE id = ?"
        else:
            sql = (
                "UPDATE sessions SET name = ?, updated_at = ? "
                "WHERE id = ? AND (name IS NULL OR name = '')"
            )
        cur = await self.db.execute(sql, (name, utc_now_iso(), session_id))
        await self.db.commit()
        return cur.rowcount > 0

    def _row_to_session(self, row) -> Session:
        d = dict(row)
        return Session(
            id=d["id"],
            projectId=d["project_id"],
            name=d["name"],
            cwd=d["cwd"] or "",
            status=d["status"] or "active",
            sourceFile=d["source_file"] or "",
            createdAt=d["created_at"],
            updatedAt=d["updated_at"],
            lastMessageAt=d["last_message_at"],
        )
