"""Error taxonomy for the ingestion pipeline.

Every error carries a stable ``code`` so callers (API, CLI, logs) can
classify failures without matching on message text.
"""
from __future__ import annotations

from typing import Any


class IngestionError(Exception):
    code = "INGESTION_ERROR"

    def __init__(self, message: str, *, cause: Any = None):
        super().__init__(message)
        self.message = message
        self.cause = cause
        if isinstance(cause, BaseException):
            self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.code, "message": self.message}
        if self.cause is not None:
            payload["cause"] = str(self.cause)
        return payload


class WatcherError(IngestionError):
    """Subscription lifecycle failure: already running, failed to start or stop."""

    code = "WATCHER_ERROR"


class FileReaderError(IngestionError):
    """I/O failure on a specific path."""

    code = "FILE_READER_ERROR"


class ParserError(IngestionError):
    """Path-derivation failure, or a file with zero valid entries among non-blank lines."""

    code = "PARSER_ERROR"


class FileSystemError(IngestionError):
    """Directory listing or stat failure."""

    code = "FILE_SYSTEM_ERROR"


class TrackingConflict(IngestionError):
    """Lost a compare-and-set race on a tracking cursor."""

    code = "TRACKING_CONFLICT"


class RepositoryError(IngestionError):
    code = "REPOSITORY_ERROR"
