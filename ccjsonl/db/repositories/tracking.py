"""SQLite implementation of the log-file tracking store.

Each transcript path has at most one live identity (``tombstoned = 0``).
A path that is removed and recreated gets a fresh identity keyed on the
path plus its first-seen timestamp; the old one is kept as a tombstone.
"""
from __future__ import annotations

import aiosqlite

from ccjsonl.date_utils import utc_now_iso
from ccjsonl.errors import RepositoryError
from ccjsonl.models import TrackingRecord


def make_file_key(file_path: str, first_seen_at: str) -> str:
    return f"{file_path}@{first_seen_at}"


class SqliteTrackingRepository:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get(self, file_path: str) -> TrackingRecord | None:
        async with self.db.execute(
            "SELECT * FROM log_file_tracking WHERE file_path = ? AND tombstoned = 0",
            (file_path,),
        ) as cur:
            row = await cur.fetchone()
            return self._row_to_record(row) if row else None

    async def create(
        self, file_path: str, *, project_name: str = "", session_id: str = ""
    ) -> TrackingRecord:
        """Create a live identity at cursor 0, or return the one a concurrent creator won with."""
        now = utc_now_iso()
        await self.db.execute(
            """INSERT INTO log_file_tracking (
                file_key, file_path, cursor, file_size, file_mtime,
                project_name, session_id, first_seen_at, last_updated_at, tombstoned
            ) VALUES (?, ?, 0, 0, 0, ?, ?, ?, ?, 0)
            ON CONFLICT DO NOTHING""",
            (make_file_key(file_path, now), file_path, project_name, session_id, now, now),
        )
        await self.db.commit()
        record = await self.get(file_path)
        if record is None:
            raise RepositoryError(f"Could not create tracking record for {file_path}")
        return record

    async def compare_and_set(
        self,
        file_key: str,
        expected_cursor: int,
        new_cursor: int,
        *,
        file_size: int,
        file_mtime: float,
        head_digest: str | None = None,
    ) -> bool:
        """Advance the cursor only if it still equals ``expected_cursor``.

        ``head_digest`` fingerprints the first line the cursor counts from; None
        keeps the stored value.
        """
        if new_cursor < expected_cursor:
            return False
        cur = await self.db.execute(
            """UPDATE log_file_tracking
            SET cursor = ?, file_size = ?, file_mtime = ?, last_updated_at = ?,
                head_digest = COALESCE(?, head_digest)
            WHERE file_key = ? AND cursor = ? AND tombstoned = 0""",
            (new_cursor, file_size, file_mtime, utc_now_iso(), head_digest, file_key, expected_cursor),
        )
        await self.db.commit()
        return cur.rowcount == 1

    async def tombstone(self, file_path: str) -> bool:
        cur = await self.db.execute(
            """UPDATE log_file_tracking SET tombstoned = 1, last_updated_at = ?
            WHERE file_path = ? AND tombstoned = 0""",
            (utc_now_iso(), file_path),
        )
        await self.db.commit()
        return cur.rowcount > 0

    async def list_all(self, include_tombstoned: bool = False) -> list[TrackingRecord]:
        if include_tombstoned:
            query = "SELECT * FROM log_file_tracking ORDER BY file_path, first_seen_at"
        else:
            query = (
                "SELECT * FROM log_file_tracking WHERE tombstoned = 0 "
                "ORDER BY file_path, first_seen_at"
            )
        async with self.db.execute(query) as cur:
            rows = await cur.fetchall()
            return [self._row_to_record(r) for r in rows]

    def _row_to_record(self, row) -> TrackingRecord:
        d = dict(row)
        return TrackingRecord(
            fileKey=d["file_key"],
            filePath=d["file_path"],
            cursor=d["cursor"],
            fileSize=d["file_size"],
            fileMtime=d["file_mtime"],
            projectName=d["project_name"] or "",
            sessionId=d["session_id"] or "",
            firstSeenAt=d["first_seen_at"],
            lastUpdatedAt=d["last_updated_at"],
            tombstoned=bool(d["tombstoned"]),
            headDigest=d.get("head_digest") or "",
        )
