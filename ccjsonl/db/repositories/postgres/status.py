"""Helpers for asyncpg command status strings."""
from __future__ import annotations


def affected_rows(status: str) -> int:
    """Row count from a status tag such as ``"UPDATE 1"`` or ``"INSERT 0 1"``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0
