"""Parse Claude Code JSONL transcripts into ParsedLogFile models.

Transcripts live at ``<root>/<projectName>/<sessionId>.jsonl`` and are
append-only. Each non-blank line is decoded and validated on its own; a bad
line is counted and skipped, never fatal for the file.
"""
from __future__ import annotations

import hashlib
import json
import logging
from pathlib import PurePath
from typing import Optional

from pydantic import ValidationError

from ccjsonl.errors import FileReaderError, ParserError
from ccjsonl.filesystem import FileReader
from ccjsonl.models import ParsedLines, ParsedLogFile, claude_log_entry_adapter

logger = logging.getLogger("ccjsonl.parser")

LOG_SUFFIX = ".jsonl"


def _split_transcript_path(file_path: str) -> Optional[tuple[str, str]]:
    parts = PurePath(file_path).parts
    if len(parts) < 3:
        return None
    file_name = parts[-1]
    if not file_name.endswith(LOG_SUFFIX):
        return None
    session_id = file_name[: -len(LOG_SUFFIX)]
    project_name = parts[-2]
    if not session_id or not project_name or project_name in ("/", "\\"):
        return None
    return project_name, session_id


def extract_project_name(file_path: str) -> Optional[str]:
    """``/root/myproj/abc123.jsonl`` -> ``myproj``; None for malformed paths."""
    split = _split_transcript_path(file_path)
    return split[0] if split else None


def extract_session_id(file_path: str) -> Optional[str]:
    """``/root/myproj/abc123.jsonl`` -> ``abc123``; None for malformed paths."""
    split = _split_transcript_path(file_path)
    return split[1] if split else None


def line_digest(line: str) -> str:
    """sha1 of one raw transcript line; undecodable bytes hash as read."""
    return hashlib.sha1(line.encode("utf-8", "surrogateescape")).hexdigest()


def _is_decodable(line: str) -> bool:
    # Readers decode with surrogateescape, so invalid UTF-8 shows up as lone surrogates.
    try:
        line.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def parse_json_lines(content: str) -> ParsedLines:
    """Decode and validate JSONL content line by line.

    Raises ParserError only when there was at least one complete non-blank
    line and none of them validated.
    """
    result = ParsedLines()
    segments = content.split("\n")
    # The last segment is unterminated; if it fails to decode it is a write in progress.
    tail_unterminated = not content.endswith("\n")
    errors: list[str] = []
    line_index = 0

    for position, raw in enumerate(segments):
        line = raw.strip()
        if not line:
            continue
        is_tail = tail_unterminated and position == len(segments) - 1
        decodable = _is_decodable(line)
        payload = None
        error = ""
        if decodable:
            try:
                payload = json.loads(line)
            except json.JSONDecodeError as e:
                error = f"invalid JSON ({e.msg})"
        else:
            error = "invalid UTF-8"
        if error and is_tail:
            result.pendingTail = True
            break

        if line_index == 0:
            result.headDigest = line_digest(line)
        line_index += 1
        if error:
            errors.append(f"line {line_index}: {error}")
            logger.warning("Skipping line %d: %s", line_index, error)
            continue

        try:
            entry = claude_log_entry_adapter.validate_python(payload)
        except ValidationError as e:
            errors.append(f"line {line_index}: invalid entry ({e.error_count()} error(s))")
            logger.warning(
                "Skipping invalid log entry at line %d (%d validation error(s))",
                line_index,
                e.error_count(),
            )
            continue

        result.entries.append(entry)
        result.lineIndexes.append(line_index - 1)
        result.rawLines.append(line)

    result.consumedLines = line_index
    result.skippedLines = len(errors)

    if not result.entries and errors:
        raise ParserError(f"No valid entries found. Errors: {', '.join(errors[:5])}")
    return result


class ClaudeLogParser:
    """LogParser over a FileReader port."""

    def __init__(self, file_reader: FileReader):
        self.file_reader = file_reader

    async def parse_file(self, file_path: str) -> ParsedLogFile:
        project_name = extract_project_name(file_path)
        session_id = extract_session_id(file_path)
        if not project_name or not session_id:
            raise ParserError(f"Could not derive project/session from path: {file_path}")

        try:
            content = await self.file_reader.read_file(file_path)
        except FileReaderError as e:
            raise ParserError("Failed to read file", cause=e) from e

        try:
            lines = parse_json_lines(content)
        except ParserError as e:
            raise ParserError(f"Failed to parse {file_path}: {e.message}", cause=e) from e

        if lines.skippedLines:
            logger.warning(f"Skipped {lines.skippedLines} invalid line(s) in {file_path}")

        return ParsedLogFile(
            filePath=file_path,
            projectName=project_name,
            sessionId=session_id,
            entries=lines.entries,
            lineIndexes=lines.lineIndexes,
            rawLines=lines.rawLines,
            consumedLines=lines.consumedLines,
            skippedLines=lines.skippedLines,
            headDigest=lines.headDigest,
        )

    # Exposed on the instance as well so callers holding only the parser can use them.
    parse_json_lines = staticmethod(parse_json_lines)
    extract_project_name = staticmethod(extract_project_name)
    extract_session_id = staticmethod(extract_session_id)
