"""Transcript parsers."""

from ccjsonl.parsers.log_parser import (
    ClaudeLogParser,
    extract_project_name,
    extract_session_id,
    parse_json_lines,
)

__all__ = [
    "ClaudeLogParser",
    "extract_project_name",
    "extract_session_id",
    "parse_json_lines",
]
