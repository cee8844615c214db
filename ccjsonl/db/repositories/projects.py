"""SQLite implementation of ProjectRepository."""
from __future__ import annotations

import hashlib

import aiosqlite

from ccjsonl.date_utils import utc_now_iso
from ccjsonl.errors import RepositoryError
from ccjsonl.models import Project


def project_id_for(name: str) -> str:
    """Deterministic project id so every writer agrees without a lookup."""
    digest = hashlib.sha1(name.encode("utf-8")).hexdigest()[:20]
    return f"P-{digest}"


class SqliteProjectRepository:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def upsert(self, name: str, path: str) -> Project:
        """Insert the project if missing; an existing row is kept as is."""
        now = utc_now_iso()
        await self.db.execute(
            """INSERT INTO projects (id, name, path, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(name) DO NOTHING""",
            (project_id_for(name), name, path, now, now),
        )
        await self.db.commit()
        project = await self.get_by_name(name)
        if project is None:
            raise RepositoryError(f"Project {name!r} missing after upsert")
        return project

    async def get(self, project_id: str) -> Project | None:
        async with self.db.execute(
            "SELECT * FROM projects WHERE id = ?", (project_id,)
        ) as cur:
            row = await cur.fetchone()
            return self._row_to_project(row) if row else None

    async def get_by_name(self, name: str) -> Project | None:
        async with self.db.execute(
            "SELECT * FROM projects WHERE name = ?", (name,)
        ) as cur:
            row = await cur.fetchone()
            return self._row_to_project(row) if row else None

    async def list_all(self) -> list[Project]:
        async with self.db.execute("SELECT * FROM projects ORDER BY name") as cur:
            rows = await cur.fetchall()
            return [self._row_to_project(r) for r in rows]

    def _row_to_project(self, row) -> Project:
        d = dict(row)
        return Project(
            id=d["id"],
            name=d["name"],
            path=d["path"],
            createdAt=d["created_at"],
            updatedAt=d["updated_at"],
        )
