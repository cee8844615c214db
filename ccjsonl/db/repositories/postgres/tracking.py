"""PostgreSQL implementation of the log-file tracking store."""
from __future__ import annotations

import asyncpg

from ccjsonl.date_utils import utc_now_iso
from ccjsonl.db.repositories.postgres.status import affected_rows
from ccjsonl.db.repositories.tracking import make_file_key
from ccjsonl.errors import RepositoryError
from ccjsonl.models import TrackingRecord


class PostgresTrackingRepository:
    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def get(self, file_path: str) -> TrackingRecord | None:
        row = await self.db.fetchrow(
            "SELECT * FROM log_file_tracking WHERE file_path = $1 AND NOT tombstoned",
            file_path,
        )
        return self._row_to_record(row) if row else None

    async def create(
        self, file_path: str, *, project_name: str = "", session_id: str = ""
    ) -> TrackingRecord:
        now = utc_now_iso()
        await self.db.execute(
            """INSERT INTO log_file_tracking (
                file_key, file_path, cursor, file_size, file_mtime,
                project_name, session_id, first_seen_at, last_updated_at, tombstoned
            ) VALUES ($1, $2, 0, 0, 0, $3, $4, $5, $6, FALSE)
            ON CONFLICT DO NOTHING""",
            make_file_key(file_path, now), file_path, project_name, session_id, now, now,
        )
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
        if new_cursor < expected_cursor:
            return False
        status = await self.db.execute(
            """UPDATE log_file_tracking
            SET cursor = $1, file_size = $2, file_mtime = $3, last_updated_at = $4,
                head_digest = COALESCE($7::text, head_digest)
            WHERE file_key = $5 AND cursor = $6 AND NOT tombstoned""",
            new_cursor, file_size, float(file_mtime), utc_now_iso(), file_key, expected_cursor,
            head_digest,
        )
        return affected_rows(status) == 1

    async def tombstone(self, file_path: str) -> bool:
        status = await self.db.execute(
            """UPDATE log_file_tracking SET tombstoned = TRUE, last_updated_at = $1
            WHERE file_path = $2 AND NOT tombstoned""",
            utc_now_iso(), file_path,
        )
        return affected_rows(status) > 0

    async def list_all(self, include_tombstoned: bool = False) -> list[TrackingRecord]:
        if include_tombstoned:
            rows = await self.db.fetch(
                "SELECT * FROM log_file_tracking ORDER BY file_path, first_seen_at"
            )
        else:
            rows = await self.db.fetch(
                "SELECT * FROM log_file_tracking WHERE NOT tombstoned ORDER BY file_path, first_seen_at"
            )
        return [self._row_to_record(r) for r in rows]

    def _row_to_record(self, row) -> TrackingRecord:
        return TrackingRecord(
            fileKey=row["file_key"],
            filePath=row["file_path"],
            cursor=row["cursor"],
            fileSize=row["file_size"],
            fileMtime=row["file_mtime"],
            projectName=row["project_name"] or "",
            sessionId=row["session_id"] or "",
            firstSeenAt=row["first_seen_at"],
            lastUpdatedAt=row["last_updated_at"],
            tombstoned=bool(row["tombstoned"]),
            headDigest=row["head_digest"] or "",
        )
