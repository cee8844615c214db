"""Repository factory to abstract DB backend (SQLite vs Postgres)."""
from __future__ import annotations

from typing import Any

import aiosqlite

from ccjsonl.db.repositories.messages import SqliteMessageRepository
from ccjsonl.db.repositories.projects import SqliteProjectRepository
from ccjsonl.db.repositories.sessions import SqliteSessionRepository
from ccjsonl.db.repositories.tracking import SqliteTrackingRepository


def get_project_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteProjectRepository(db)
    from ccjsonl.db.repositories.postgres.projects import PostgresProjectRepository
    return PostgresProjectRepository(db)


def get_session_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteSessionRepository(db)
    from ccjsonl.db.repositories.postgres.sessions import PostgresSessionRepository
    return PostgresSessionRepository(db)


def get_message_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteMessageRepository(db)
    from ccjsonl.db.repositories.postgres.messages import PostgresMessageRepository
    return PostgresMessageRepository(db)


def get_tracking_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteTrackingRepository(db)
    from ccjsonl.db.repositories.postgres.tracking import PostgresTrackingRepository
    return PostgresTrackingRepository(db)
