"""asyncpg-backed repositories mirroring the SQLite ones."""
