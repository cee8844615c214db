"""PostgreSQL implementation of ProjectRepository."""
from __future__ import annotations

import asyncpg

from ccjsonl.date_utils import utc_now_iso
from ccjsonl.db.repositories.projects import project_id_for
from ccjsonl.errors import RepositoryError
from ccjsonl.models import Project


class PostgresProjectRepository:
    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def upsert(self, name: str, path: str) -> Project:
        now = utc_now_iso()
        await self.db.execute(
            """INSERT INTO projects (id, name, path, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT(name) DO NOTHING""",
            project_id_for(name), name, path, now, now,
        )
        project = await self.get_by_name(name)
        if project is None:
            raise RepositoryError(f"Project {name!r} missing after upsert")
        return project

    async def get(self, project_id: str) -> Project | None:
        row = await self.db.fetchrow("SELECT * FROM projects WHERE id = $1", project_id)
        return self._row_to_project(row) if row else None

    async def get_by_name(self, name: str) -> Project | None:
        row = await self.db.fetchrow("SELECT * FROM projects WHERE name = $1", name)
        return self._row_to_project(row) if row else None

    async def list_all(self) -> list[Project]:
        rows = await self.db.fetch("SELECT * FROM projects ORDER BY name")
        return [self._row_to_project(r) for r in rows]

    def _row_to_project(self, row) -> Project:
        return Project(
            id=row["id"],
            name=row["name"],
            path=row["path"],
            createdAt=row["created_at"],
            updatedAt=row["updated_at"],
        )
