"""Periodic full-tree reconciliation.

Rescans the transcript root on a fixed interval and feeds synthetic events
into the same intake the watcher uses, so files changed while the watcher
was down (or whose notifications were lost) still get ingested.
"""
from __future__ import annotations

import asyncio
import logging
import time
from pathlib import PurePath
from typing import Callable, Optional

from ccjsonl.context import IngestionContext
from ccjsonl.date_utils import utc_now_iso
from ccjsonl.db.file_watcher import dispatch_event
from ccjsonl.errors import FileSystemError, IngestionError
from ccjsonl.filesystem import matches_pattern
from ccjsonl.models import FileChangeEvent, ReconcileResult

logger = logging.getLogger("ccjsonl.reconciler")

EventIntake = Callable[[FileChangeEvent], object]


class PeriodicReconciler:
    def __init__(
        self,
        ctx: IngestionContext,
        intake: EventIntake,
        target_directory: str,
        *,
        pattern: str = "**/*.jsonl",
        interval_ms: int = 60 * 60 * 1000,
        run_on_start: bool = True,
    ):
        self.ctx = ctx
        self.intake = intake
        self.target_directory = str(target_directory)
        self.pattern = pattern
        self.interval_ms = max(1, interval_ms)
        self.run_on_start = run_on_start
        self.last_result: Optional[ReconcileResult] = None
        self.last_error: str = ""
        self._task: Optional[asyncio.Task] = None
        self._pass_lock = asyncio.Lock()

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            logger.warning("Reconciler already running")
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(
            f"Reconciler started for {self.target_directory} (every {self.interval_ms / 1000:.0f}s)"
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Reconciler stopped")

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _loop(self) -> None:
        if self.run_on_start:
            await self._scheduled_pass()
        while True:
            await asyncio.sleep(self.interval_ms / 1000)
            await self._scheduled_pass()

    async def _scheduled_pass(self) -> None:
        if self._pass_lock.locked():
            logger.info("Previous reconciliation still running, skipping this tick")
            return
        try:
            await self.reconcile_once()
        except IngestionError as e:
            self.last_error = e.message
            logger.error(f"Reconciliation failed: [{e.code}] {e.message}")
        except Exception as e:
            self.last_error = str(e)
            logger.error(f"Reconciliation failed: {e}")

    async def reconcile_once(self) -> ReconcileResult:
        """Run one pass now. Raises FileSystemError if the root cannot be listed."""
        async with self._pass_lock:
            started_at = utc_now_iso()
            t0 = time.monotonic()
            files = await self._list_files()
            change_events = await self._emit_changes(files)
            unlink_events = await self._emit_missed_unlinks(set(files))
            result = ReconcileResult(
                scannedFiles=len(files),
                changeEvents=change_events,
                unlinkEvents=unlink_events,
                startedAt=started_at,
                durationMs=int((time.monotonic() - t0) * 1000),
            )
            self.last_result = result
            self.last_error = ""
            logger.info(
                f"Reconciliation scanned {result.scannedFiles} files: "
                f"{change_events} changed, {unlink_events} removed ({result.durationMs}ms)"
            )
            return result

    async def _list_files(self) -> list[str]:
        files: list[str] = []
        # The root must be listable; deeper directories are skipped on failure.
        stack = [(self.target_directory, True)]
        while stack:
            directory, is_root = stack.pop()
            try:
                entries = await self.ctx.file_system.read_directory(directory)
            except FileSystemError as e:
                if is_root:
                    raise
                logger.warning(f"Skipping unreadable directory {directory}: {e.message}")
                continue
            for entry in entries:
                child = str(PurePath(directory) / entry.name)
                if entry.is_dir:
                    stack.append((child, False))
                elif entry.is_file and matches_pattern(self.target_directory, child, self.pattern):
                    files.append(child)
        return sorted(files)

    async def _emit_changes(self, files: list[str]) -> int:
        emitted = 0
        for path in files:
            try:
                stat = await self.ctx.file_system.stat(path)
            except FileSystemError as e:
                logger.warning(f"Skipping {path}: {e.message}")
                continue
            record = await self.ctx.tracking.get(path)
            if record is not None and stat.mtime <= record.fileMtime and stat.size == record.fileSize:
                continue
            await self._emit(FileChangeEvent(type="change", filePath=path, source="reconciler"))
            emitted += 1
        return emitted

    async def _emit_missed_unlinks(self, seen: set[str]) -> int:
        emitted = 0
        for record in await self.ctx.tracking.list_all():
            path = record.filePath
            if path in seen or not matches_pattern(self.target_directory, path, self.pattern):
                continue
            if await self.ctx.file_reader.file_exists(path):
                continue
            await self._emit(FileChangeEvent(type="unlink", filePath=path, source="reconciler"))
            emitted += 1
        return emitted

    async def _emit(self, event: FileChangeEvent) -> None:
        await dispatch_event(self.intake, event)
