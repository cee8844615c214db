"""Explicit dependency bundle shared by the pipeline components.

Built once at startup from an open database handle and passed to the
processor, reconciler, API and CLI. Tests build their own isolated
contexts over an in-memory database and filesystem.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from ccjsonl.db import factory
from ccjsonl.filesystem import FileReader, FileSystemManager, LocalFileSystem
from ccjsonl.parsers.log_parser import ClaudeLogParser


@dataclass
class IngestionContext:
    db: Any
    file_reader: FileReader
    file_system: FileSystemManager
    log_parser: ClaudeLogParser
    projects: Any
    sessions: Any
    messages: Any
    tracking: Any


def build_context(db: Any, file_system: Optional[Any] = None) -> IngestionContext:
    """Wire repositories for ``db`` and a filesystem that serves both ports."""
    fs = file_system if file_system is not None else LocalFileSystem()
    return IngestionContext(
        db=db,
        file_reader=fs,
        file_system=fs,
        log_parser=ClaudeLogParser(fs),
        projects=factory.get_project_repository(db),
        sessions=factory.get_session_repository(db),
        messages=factory.get_message_repository(db),
        tracking=factory.get_tracking_repository(db),
    )
