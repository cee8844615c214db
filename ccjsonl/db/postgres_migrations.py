"""PostgreSQL schema creation, mirroring sqlite_migrations."""
from __future__ import annotations

import logging

import asyncpg

logger = logging.getLogger("ccjsonl.db")

SCHEMA_VERSION = 2

_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS log_file_tracking (
    file_key        TEXT PRIMARY KEY,
    file_path       TEXT NOT NULL,
    cursor          INTEGER NOT NULL DEFAULT 0,
    file_size       BIGINT NOT NULL DEFAULT 0,
    file_mtime      DOUBLE PRECISION NOT NULL DEFAULT 0,
    project_name    TEXT DEFAULT '',
    session_id      TEXT DEFAULT '',
    first_seen_at   TEXT NOT NULL,
    last_updated_at TEXT NOT NULL,
    tombstoned      BOOLEAN NOT NULL DEFAULT FALSE,
    head_digest     TEXT NOT NULL DEFAULT ''
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_tracking_active_path
    ON log_file_tracking(file_path) WHERE NOT tombstoned;

CREATE TABLE IF NOT EXISTS projects (
    id          TEXT PRIMARY KEY,
    name        TEXT NOT NULL UNIQUE,
    path        TEXT NOT NULL,
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sessions (
    id               TEXT PRIMARY KEY,
    project_id       TEXT NOT NULL REFERENCES projects(id),
    name             TEXT,
    cwd              TEXT DEFAULT '',
    status           TEXT DEFAULT 'active',
    source_file      TEXT DEFAULT '',
    created_at       TEXT NOT NULL,
    updated_at       TEXT NOT NULL,
    last_message_at  TEXT
);

CREATE INDEX IF NOT EXISTS idx_sessions_project ON sessions(project_id, last_message_at DESC);

CREATE TABLE IF NOT EXISTS messages (
    id           TEXT PRIMARY KEY,
    session_id   TEXT NOT NULL REFERENCES sessions(id),
    source_key   TEXT NOT NULL,
    line_index   INTEGER DEFAULT 0,
    uuid         TEXT DEFAULT '',
    parent_uuid  TEXT,
    role         TEXT NOT NULL,
    content      TEXT,
    cwd          TEXT DEFAULT '',
    timestamp    TEXT NOT NULL,
    raw_payload  TEXT NOT NULL,
    created_at   TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_messages_natural_key ON messages(session_id, source_key);
CREATE INDEX IF NOT EXISTS idx_messages_session_ts ON messages(session_id, timestamp, line_index);
"""


async def run_migrations(db: asyncpg.Pool) -> None:
    """Create all tables. Idempotent."""
    async with db.acquire() as conn:
        await conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL, applied TIMESTAMPTZ NOT NULL DEFAULT now())"
        )
        current_version = await conn.fetchval("SELECT MAX(version) FROM schema_version") or 0
        if current_version >= SCHEMA_VERSION:
            logger.info(f"Schema is up to date (version {current_version})")
            return

        logger.info(f"Running migrations: {current_version} → {SCHEMA_VERSION}")
        async with conn.transaction():
            await conn.execute(_TABLES)
            # Version 1 databases predate the first-line fingerprint.
            await conn.execute(
                "ALTER TABLE log_file_tracking ADD COLUMN IF NOT EXISTS head_digest TEXT NOT NULL DEFAULT ''"
            )
            await conn.execute("INSERT INTO schema_version (version) VALUES ($1)", SCHEMA_VERSION)
    logger.info(f"Migrations complete, schema version {SCHEMA_VERSION}")
