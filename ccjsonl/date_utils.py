"""Timestamp normalization shared by the parser, processor and repositories."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

# Fixed-width UTC format so stored timestamps compare correctly as strings.
_ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def _format_datetime_utc(value: datetime) -> str:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(_ISO_FORMAT)


def _parse_datetime_token(token: str) -> datetime | None:
    cleaned = token.strip()
    if not cleaned:
        return None
    try:
        return datetime.fromisoformat(cleaned.replace("Z", "+00:00"))
    except ValueError:
        return None


def normalize_timestamp(value: Any) -> str:
    """Convert transcript timestamps into comparable UTC ISO strings ("" if unparseable)."""
    if value is None:
        return ""
    if isinstance(value, datetime):
        return _format_datetime_utc(value)
    if isinstance(value, (int, float)):
        return _format_datetime_utc(datetime.fromtimestamp(float(value), tz=timezone.utc))
    if isinstance(value, str):
        parsed = _parse_datetime_token(value)
        if parsed:
            return _format_datetime_utc(parsed)
    return ""


def utc_now_iso() -> str:
    return _format_datetime_utc(datetime.now(timezone.utc))
