"""Incremental transcript ingestion.

Consumes change events from the watcher and the reconciler, re-parses the
file, applies only the lines past the tracked cursor and then advances the
cursor with a compare-and-set. Work is serialized per path and bounded
across paths by a worker limit.
"""
from __future__ import annotations

import asyncio
import copy
import hashlib
import logging
import re
import time
from collections import deque
from typing import Any, Optional

from ccjsonl import config
from ccjsonl.context import IngestionContext
from ccjsonl.date_utils import normalize_timestamp, utc_now_iso
from ccjsonl.errors import IngestionError, ParserError, TrackingConflict
from ccjsonl.models import (
    AssistantLogEntry,
    FileChangeEvent,
    FileProcessResult,
    Message,
    ParsedLogFile,
    ResultLogEntry,
    SummaryLogEntry,
    SystemLogEntry,
    TrackingRecord,
    UserLogEntry,
)
from ccjsonl.observability import (
    record_ingestion,
    record_parser_failure,
    record_tracking_conflict,
    start_span,
)
from ccjsonl.parsers.log_parser import extract_project_name, extract_session_id

logger = logging.getLogger("ccjsonl.batch")

SESSION_NAME_MAX_LENGTH = 50
DEFAULT_SESSION_NAME = "Generated Session"

_SUMMARY_PREFIX = re.compile(r"^(Summary|Session|Chat|Conversation|Discussion):\s*", re.IGNORECASE)
_ARTICLE_PREFIX = re.compile(r"^(The|This|A|An)\s+", re.IGNORECASE)
_SENTENCE_END = re.compile(r"[.!?]+")


def _digest(value: str) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()


def message_source_key(uuid: str | None, raw_line: str) -> str:
    """Stable per-line identity: the entry uuid, or a checksum of the line."""
    return uuid or f"sha1:{_digest(raw_line)}"


def message_storage_id(session_id: str, source_key: str) -> str:
    return f"M-{_digest(f'{session_id}::{source_key}')[:24]}"


def truncate_session_name(text: str) -> str:
    cleaned = text.strip()
    if len(cleaned) <= SESSION_NAME_MAX_LENGTH:
        return cleaned
    return f"{cleaned[: SESSION_NAME_MAX_LENGTH - 3]}..."


def session_name_from_summary(summary: str) -> str:
    """Short session title from a summary: first sentence, filler prefixes dropped."""
    first_sentence = _SENTENCE_END.split(summary.strip())[0].strip()
    if not first_sentence:
        return DEFAULT_SESSION_NAME
    name = _SUMMARY_PREFIX.sub("", first_sentence)
    name = _ARTICLE_PREFIX.sub("", name).strip()
    return truncate_session_name(name) or DEFAULT_SESSION_NAME


def session_name_from_message(content: str) -> str:
    return truncate_session_name(content.strip().split("\n")[0])


def _content_text(content: Any) -> Optional[str]:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return None
    parts = [
        block.get("text", "")
        for block in content
        if isinstance(block, dict) and block.get("type") == "text"
    ]
    text = "\n".join(p for p in parts if p)
    return text or None


def _to_message(
    session_id: str,
    entry: UserLogEntry | AssistantLogEntry,
    line_index: int,
    raw_line: str,
) -> Message:
    source_key = message_source_key(entry.uuid, raw_line)
    return Message(
        id=message_storage_id(session_id, source_key),
        sessionId=session_id,
        sourceKey=source_key,
        lineIndex=line_index,
        uuid=entry.uuid,
        parentUuid=entry.parentUuid,
        role=entry.message.role,
        content=_content_text(entry.message.content),
        cwd=entry.cwd,
        timestamp=normalize_timestamp(entry.timestamp) or entry.timestamp,
        rawPayload=raw_line,
    )


def _head_changed(record: TrackingRecord, parsed: ParsedLogFile) -> bool:
    """True when the line the cursor counts from is no longer the first line of the file."""
    return bool(record.headDigest and parsed.headDigest and record.headDigest != parsed.headDigest)


class _SessionTouch:
    """Folds a run's entries into a single monotonic session update."""

    def __init__(self) -> None:
        self.timestamp: Optional[str] = None
        self.cwd: Optional[str] = None
        self.status: Optional[str] = None

    def observe(self, timestamp: Optional[str], cwd: Optional[str] = None) -> None:
        ts = normalize_timestamp(timestamp) or None
        if ts is None:
            if cwd and self.cwd is None:
                self.cwd = cwd
            return
        if self.timestamp is None or ts >= self.timestamp:
            self.timestamp = ts
            if cwd:
                self.cwd = cwd

    @property
    def dirty(self) -> bool:
        return any(v is not None for v in (self.timestamp, self.cwd, self.status))


class BatchProcessor:
    """Per-path serialized, pool-bounded ingestion of change events."""

    def __init__(
        self,
        ctx: IngestionContext,
        max_workers: int | None = None,
        history_size: int = 40,
    ):
        self.ctx = ctx
        self.max_workers = max(1, max_workers or config.MAX_CONCURRENCY)
        self._semaphore = asyncio.Semaphore(self.max_workers)
        self._in_flight: dict[str, asyncio.Task] = {}
        self._pending: dict[str, FileChangeEvent] = {}
        # Paths whose coalesced events included an unlink; removal must run before the next read.
        self._unlinked: set[str] = set()
        self._counters: dict[str, int] = {
            "events": 0,
            "coalesced": 0,
            "runs": 0,
            "processed": 0,
            "up_to_date": 0,
            "failed": 0,
            "conflicts": 0,
            "removed": 0,
            "missing": 0,
            "entries_applied": 0,
            "messages_inserted": 0,
            "skipped_lines": 0,
        }
        self._recent: deque[dict[str, Any]] = deque(maxlen=history_size)

    # ── Intake ──────────────────────────────────────────────────────

    def submit(self, event: FileChangeEvent) -> None:
        """Queue an event.

        A path already in flight keeps one pending slot and the latest event
        wins, except that an unlink folded into the slot is still applied
        before the next read of that path.
        """
        self._counters["events"] += 1
        path = event.filePath
        if path in self._in_flight:
            if path in self._pending:
                self._counters["coalesced"] += 1
            if event.type == "unlink":
                self._unlinked.add(path)
            self._pending[path] = event
            return
        self._in_flight[path] = asyncio.create_task(self._run_path(path, event))

    async def drain(self) -> None:
        """Wait until every queued and pending event has been processed."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    def is_busy(self) -> bool:
        return bool(self._in_flight)

    async def _run_path(self, path: str, event: FileChangeEvent) -> None:
        current: Optional[FileChangeEvent] = event
        try:
            while current is not None:
                await self._run_one(current)
                current = self._pending.pop(path, None)
                if path in self._unlinked:
                    self._unlinked.discard(path)
                    if current is not None and current.type != "unlink":
                        # Removed and recreated while a run was in flight.
                        await self._run_one(
                            FileChangeEvent(type="unlink", filePath=path, source=current.source)
                        )
        finally:
            self._in_flight.pop(path, None)

    async def _run_one(self, event: FileChangeEvent) -> None:
        async with self._semaphore:
            result = await self.handle(event)
        self._record(event, result)

    # ── Processing ──────────────────────────────────────────────────

    async def handle(self, event: FileChangeEvent) -> FileProcessResult:
        if event.type == "unlink":
            return await self.remove_file(event.filePath)
        return await self.process_file(event.filePath)

    async def remove_file(self, file_path: str) -> FileProcessResult:
        """Tombstone the tracking record. Ingested rows stay in place."""
        try:
            removed = await self.ctx.tracking.tombstone(file_path)
        except Exception as e:
            logger.error(f"Failed to tombstone {file_path}: {e}")
            return FileProcessResult(filePath=file_path, status="failed", error=str(e))
        if removed:
            logger.info(f"Tracking record tombstoned for removed file {file_path}")
        return FileProcessResult(filePath=file_path, status="removed")

    async def process_file(self, file_path: str) -> FileProcessResult:
        """Ingest new lines of one file. Failures become an outcome, never an exception."""
        t0 = time.monotonic()
        project_name = extract_project_name(file_path) or ""
        with start_span("ingest.file", {"file_path": file_path, "project": project_name}):
            try:
                result = await self._process(file_path)
            except TrackingConflict as e:
                logger.info(f"Discarding batch for {file_path}: {e.message}")
                record_tracking_conflict(project_id=project_name)
                result = FileProcessResult(filePath=file_path, status="conflict", error=e.message)
            except IngestionError as e:
                logger.error(f"Failed to ingest {file_path}: [{e.code}] {e.message}")
                result = FileProcessResult(filePath=file_path, status="failed", error=e.message)
            except Exception as e:
                logger.error(f"Unexpected error ingesting {file_path}: {e}")
                result = FileProcessResult(filePath=file_path, status="failed", error=str(e))
        duration_ms = (time.monotonic() - t0) * 1000
        record_ingestion("transcript", result.status, duration_ms, project_id=project_name)
        return result

    async def _process(self, file_path: str) -> FileProcessResult:
        ctx = self.ctx
        project_name = extract_project_name(file_path)
        session_id = extract_session_id(file_path)
        if not project_name or not session_id:
            raise ParserError(f"Could not derive project/session from path: {file_path}")

        if not await ctx.file_reader.file_exists(file_path):
            # The unlink notification was lost; treat it like one.
            await ctx.tracking.tombstone(file_path)
            return FileProcessResult(filePath=file_path, status="missing")

        # Stat before reading so a write racing the read leaves the stored signal stale.
        stat = await ctx.file_system.stat(file_path)
        record = await ctx.tracking.get(file_path)
        if record is not None and record.fileSize == stat.size and record.fileMtime == stat.mtime:
            return FileProcessResult(filePath=file_path, status="up_to_date", cursor=record.cursor)

        parsed = await ctx.log_parser.parse_file(file_path)

        if record is None:
            record = await ctx.tracking.create(
                file_path, project_name=project_name, session_id=session_id
            )
        elif parsed.consumedLines < record.cursor or _head_changed(record, parsed):
            logger.info(
                f"{file_path} was replaced (lines {parsed.consumedLines}, cursor {record.cursor}), replaying"
            )
            await ctx.tracking.tombstone(file_path)
            record = await ctx.tracking.create(
                file_path, project_name=project_name, session_id=session_id
            )

        expected_cursor = record.cursor
        new_cursor = parsed.consumedLines
        fresh = [i for i, line_index in enumerate(parsed.lineIndexes) if line_index >= expected_cursor]
        skipped = (new_cursor - expected_cursor) - len(fresh)

        project = await ctx.projects.upsert(project_name, project_name)
        await ctx.sessions.upsert(session_id, project.id, name=None, cwd="", source_file=file_path)

        inserted = 0
        touch = _SessionTouch()
        summary_name: Optional[str] = None
        for i in fresh:
            entry = parsed.entries[i]
            if isinstance(entry, (UserLogEntry, AssistantLogEntry)):
                message = _to_message(session_id, entry, parsed.lineIndexes[i], parsed.rawLines[i])
                if await ctx.messages.upsert(message):
                    inserted += 1
                touch.observe(entry.timestamp, entry.cwd)
            elif isinstance(entry, SystemLogEntry):
                touch.observe(entry.timestamp, entry.cwd)
            elif isinstance(entry, ResultLogEntry):
                touch.observe(entry.timestamp)
                touch.status = "error" if entry.is_error else "completed"
            elif isinstance(entry, SummaryLogEntry):
                summary_name = session_name_from_summary(entry.summary)

        if touch.dirty:
            await ctx.sessions.touch(
                session_id, timestamp=touch.timestamp, cwd=touch.cwd, status=touch.status
            )
        if summary_name:
            await ctx.sessions.update_name(session_id, summary_name, overwrite=True)
            logger.info(f"Session {session_id} renamed from summary: {summary_name!r}")
        await self._ensure_session_name(session_id)

        if skipped > 0:
            record_parser_failure("jsonl", project_id=project_name, count=skipped)

        committed = await ctx.tracking.compare_and_set(
            record.fileKey,
            expected_cursor,
            new_cursor,
            file_size=stat.size,
            file_mtime=stat.mtime,
            head_digest=parsed.headDigest or None,
        )
        if not committed:
            raise TrackingConflict(f"Cursor for {file_path} moved past {expected_cursor}")

        logger.debug(
            f"Ingested {file_path}: {len(fresh)} entries, {inserted} new messages, cursor {expected_cursor}->{new_cursor}"
        )
        return FileProcessResult(
            filePath=file_path,
            status="processed",
            entriesApplied=len(fresh),
            messagesInserted=inserted,
            skippedLines=skipped,
            cursor=new_cursor,
        )

    async def _ensure_session_name(self, session_id: str) -> None:
        session = await self.ctx.sessions.get(session_id)
        if session is None or session.name:
            return
        first = await self.ctx.messages.first_user_message(session_id)
        if first is None or not first.content:
            return
        name = session_name_from_message(first.content)
        if name:
            await self.ctx.sessions.update_name(session_id, name, overwrite=False)

    # ── Observability ───────────────────────────────────────────────

    def _record(self, event: FileChangeEvent, result: FileProcessResult) -> None:
        counters = self._counters
        counters["runs"] += 1
        counter_key = "conflicts" if result.status == "conflict" else result.status
        counters[counter_key] = counters.get(counter_key, 0) + 1
        counters["entries_applied"] += result.entriesApplied
        counters["messages_inserted"] += result.messagesInserted
        counters["skipped_lines"] += result.skippedLines
        self._recent.appendleft({
            **result.model_dump(),
            "eventType": event.type,
            "source": event.source,
            "finishedAt": utc_now_iso(),
        })

    def snapshot(self) -> dict[str, Any]:
        """Counters, in-flight paths and recent per-file outcomes (newest first)."""
        return {
            "maxWorkers": self.max_workers,
            "inFlight": sorted(self._in_flight),
            "pending": sorted(self._pending),
            "counters": dict(self._counters),
            "recent": copy.deepcopy(list(self._recent)),
        }
