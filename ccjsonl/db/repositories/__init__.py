"""SQLite repositories; Postgres equivalents live in ``postgres/``."""
