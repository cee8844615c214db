"""SQLite schema creation and versioning.

All CREATE TABLE statements for ingested records and tracking cursors.
Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("ccjsonl.db")

SCHEMA_VERSION = 2

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. Log file tracking (per-file ingestion cursor) ───────────────
CREATE TABLE IF NOT EXISTS log_file_tracking (
    file_key        TEXT PRIMARY KEY,
    file_path       TEXT NOT NULL,
    cursor          INTEGER NOT NULL DEFAULT 0,
    file_size       INTEGER NOT NULL DEFAULT 0,
    file_mtime      REAL NOT NULL DEFAULT 0,
    project_name    TEXT DEFAULT '',
    session_id      TEXT DEFAULT '',
    first_seen_at   TEXT NOT NULL,
    last_updated_at TEXT NOT NULL,
    tombstoned      INTEGER NOT NULL DEFAULT 0,
    head_digest     TEXT NOT NULL DEFAULT ''
);

-- One live identity per path; tombstoned identities are retained.
CREATE UNIQUE INDEX IF NOT EXISTS idx_tracking_active_path
    ON log_file_tracking(file_path) WHERE tombstoned = 0;

-- ── 2. Projects ────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS projects (
    id          TEXT PRIMARY KEY,
    name        TEXT NOT NULL UNIQUE,
    path        TEXT NOT NULL,
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);

-- ── 3. Sessions ────────────────────────────────────────────────────
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

-- ── 4. Messages ────────────────────────────────────────────────────
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


async def _ensure_column(db: aiosqlite.Connection, table: str, column: str, ddl: str) -> None:
    """Add a column introduced after a table was first created."""
    async with db.execute(f"PRAGMA table_info({table})") as cur:
        existing = {row[1] for row in await cur.fetchall()}
    if column not in existing:
        await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables. Idempotent."""
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
            current_version = row[0] if row and row[0] else 0
    except aiosqlite.OperationalError:
        current_version = 0

    if current_version >= SCHEMA_VERSION:
        logger.info(f"Schema is up to date (version {current_version})")
        return

    logger.info(f"Running migrations: {current_version} → {SCHEMA_VERSION}")
    await db.executescript(_TABLES)
    await _ensure_column(db, "log_file_tracking", "head_digest", "TEXT NOT NULL DEFAULT ''")
    await db.execute(
        "INSERT INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
    await db.commit()
    logger.info(f"Migrations complete, schema version {SCHEMA_VERSION}")
