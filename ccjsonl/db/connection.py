"""Database connection factory.

Opens an async connection to SQLite (default, WAL mode) or an asyncpg pool.
Backend selection via CCJSONL_DB_BACKEND. The caller owns the returned
handle and passes it explicitly; nothing is cached at module level.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Union

import aiosqlite
import asyncpg

from ccjsonl import config

logger = logging.getLogger("ccjsonl.db")

# Any to support asyncpg.Pool
DbConnection = Union[aiosqlite.Connection, Any]


async def open_connection(
    backend: str | None = None,
    db_path: Path | str | None = None,
    database_url: str | None = None,
) -> DbConnection:
    """Open a database connection/pool for the configured backend."""
    backend = backend or config.DB_BACKEND
    if backend == "postgres":
        url = database_url or config.DATABASE_URL
        logger.info("Connecting to PostgreSQL")
        return await asyncpg.create_pool(url)

    path = str(db_path or config.DB_PATH)
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(path)
    conn.row_factory = aiosqlite.Row
    # WAL for concurrent readers (the API) while the pipeline writes.
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA busy_timeout=5000")
    logger.info(f"Database connection established: {path}")
    return conn


async def close_connection(db: DbConnection | None) -> None:
    """Close a connection or pool returned by open_connection."""
    if db is None:
        return
    await db.close()
    logger.info("Database connection closed")
