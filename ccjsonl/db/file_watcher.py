"""File watcher service using watchfiles.

Monitors the transcript root for add/change/unlink notifications and hands
each qualifying event to a handler. ``ManualFileWatcher`` is a deterministic
variant for tests: events are synthesized directly and debounced against a
virtual clock instead of real timers.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol, Union

from watchfiles import Change, awatch

from ccjsonl.errors import WatcherError
from ccjsonl.filesystem import matches_pattern
from ccjsonl.models import ChangeType, FileChangeEvent, WatcherConfig

logger = logging.getLogger("ccjsonl.watcher")

EventHandler = Callable[[FileChangeEvent], Union[Awaitable[Any], Any]]

_CHANGE_TYPES: dict[Change, ChangeType] = {
    Change.added: "add",
    Change.modified: "change",
    Change.deleted: "unlink",
}

# Upper bound for grouping a continuous stream of writes into one batch.
_MAX_GROUPING_MS = 10_000


class FileWatcher(Protocol):
    async def start(self, config: WatcherConfig, handler: EventHandler) -> None: ...

    async def stop(self) -> None: ...

    def is_watching(self) -> bool: ...


def merge_change(previous: tuple[ChangeType, ...], incoming: ChangeType) -> tuple[ChangeType, ...]:
    """Fold a new notification into those already pending for the same path.

    Returns the events to deliver, in order. A path removed and recreated
    inside one window yields ``("unlink", "add")`` so the old file identity
    is retired before the new content is read.
    """
    if not previous or incoming == "unlink":
        return (incoming,)
    if previous[-1] == "unlink":
        return previous + ("add",)
    return previous


def coalesce_changes(
    changes: Iterable[tuple[ChangeType, str]],
) -> dict[str, tuple[ChangeType, ...]]:
    """Collapse a burst of notifications per path, first-seen order."""
    merged: dict[str, tuple[ChangeType, ...]] = {}
    for change_type, path in changes:
        merged[path] = merge_change(merged.get(path, ()), change_type)
    return merged


async def dispatch_event(handler: EventHandler, event: FileChangeEvent) -> None:
    """Invoke the handler; failures are logged and never reach the subscription."""
    try:
        result = handler(event)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.error(f"Watch handler failed for {event.type} {event.filePath}: {e}")


def _scan_matching_files(root: str, pattern: str) -> list[str]:
    return sorted(
        str(p) for p in Path(root).rglob("*")
        if p.is_file() and matches_pattern(root, p, pattern)
    )


class WatchfilesFileWatcher:
    """Background watcher backed by `watchfiles` (Rust notify, or polling)."""

    def __init__(self) -> None:
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._stopping = False
        self._starting = False
        self._watching = False

    async def start(self, config: WatcherConfig, handler: EventHandler) -> None:
        if self._stopping:
            raise WatcherError("File watcher is still stopping")
        if self._watching or self._starting:
            raise WatcherError("File watcher already running")

        root = config.targetDirectory
        if not Path(root).is_dir():
            raise WatcherError(f"Failed to start watcher: {root} is not a directory")

        # Claimed before the first await so an overlapping start() is rejected.
        self._starting = True
        try:
            await self._start(config, handler)
        finally:
            self._starting = False

    async def _start(self, config: WatcherConfig, handler: EventHandler) -> None:
        root = config.targetDirectory
        if not config.ignoreInitial:
            try:
                initial = await asyncio.to_thread(_scan_matching_files, root, config.pattern)
            except OSError as e:
                raise WatcherError(f"Failed to scan {root}", cause=e) from e
            logger.info(f"Initial scan found {len(initial)} files under {root}")
            for path in initial:
                await dispatch_event(handler, FileChangeEvent(type="add", filePath=path))

        if not config.persistent:
            logger.info("Watcher is not persistent, initial scan only")
            return

        self._stop_event = asyncio.Event()
        self._watching = True
        self._task = asyncio.create_task(self._watch_loop(config, handler, self._stop_event))
        logger.info(f"File watcher started on {root} ({config.pattern})")

    async def stop(self) -> None:
        """Stop the subscription. In-flight handler calls are allowed to finish."""
        if self._task is None:
            self._watching = False
            return
        self._stopping = True
        self._watching = False
        try:
            if self._stop_event is not None:
                self._stop_event.set()
            try:
                await asyncio.wait_for(asyncio.shield(self._task), timeout=10)
            except asyncio.TimeoutError:
                logger.warning("File watcher did not stop in time, cancelling")
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
        finally:
            self._task = None
            self._stop_event = None
            self._stopping = False
        logger.info("File watcher stopped")

    def is_watching(self) -> bool:
        return self._watching

    async def _watch_loop(
        self, config: WatcherConfig, handler: EventHandler, stop_event: asyncio.Event
    ) -> None:
        root = config.targetDirectory
        # A burst is yielded once no new notification arrived for ``step`` ms.
        quiet_ms = max(config.stabilityThreshold, config.pollInterval)

        def _filter(change: Change, path: str) -> bool:
            return matches_pattern(root, path, config.pattern)

        try:
            async for changes in awatch(
                root,
                watch_filter=_filter,
                debounce=max(quiet_ms, _MAX_GROUPING_MS),
                step=quiet_ms,
                stop_event=stop_event,
                force_polling=config.forcePolling,
                poll_delay_ms=config.pollInterval,
                recursive=True,
            ):
                merged = coalesce_changes(
                    (_CHANGE_TYPES[change], path) for change, path in changes
                    if change in _CHANGE_TYPES
                )
                logger.debug(f"Detected {len(merged)} file changes")
                for path, change_types in merged.items():
                    for change_type in change_types:
                        await dispatch_event(handler, FileChangeEvent(type=change_type, filePath=path))
        except asyncio.CancelledError:
            logger.info("File watcher task cancelled")
        except Exception as e:
            logger.error(f"File watcher error: {e}")
        finally:
            self._watching = False


class ManualFileWatcher:
    """Deterministic watcher double.

    Tests push notifications with ``trigger_add`` / ``trigger_change`` /
    ``trigger_unlink``. Notifications for one path are held until the path has
    been quiet for ``stabilityThreshold`` virtual milliseconds, then merged
    with ``merge_change`` and delivered on ``advance()``. ``flush()`` delivers
    everything pending.
    """

    def __init__(self, initial_files: Iterable[str] = ()):
        self._initial_files = list(initial_files)
        self._config: Optional[WatcherConfig] = None
        self._handler: Optional[EventHandler] = None
        self._starting = False
        self._watching = False
        self._clock_ms = 0
        self._pending: dict[str, tuple[ChangeType, ...]] = {}
        self._last_seen: dict[str, int] = {}
        self.delivered: list[FileChangeEvent] = []

    @property
    def now_ms(self) -> int:
        return self._clock_ms

    async def start(self, config: WatcherConfig, handler: EventHandler) -> None:
        if self._watching or self._starting:
            raise WatcherError("File watcher already running")
        self._starting = True
        try:
            self._config = config
            self._handler = handler
            if not config.ignoreInitial:
                for path in self._initial_files:
                    if matches_pattern(config.targetDirectory, path, config.pattern):
                        await self._deliver(FileChangeEvent(type="add", filePath=path))
            self._watching = config.persistent
        finally:
            self._starting = False

    async def stop(self) -> None:
        self._watching = False
        self._pending.clear()
        self._last_seen.clear()

    def is_watching(self) -> bool:
        return self._watching

    def trigger_add(self, file_path: str) -> bool:
        return self._record("add", file_path)

    def trigger_change(self, file_path: str) -> bool:
        return self._record("change", file_path)

    def trigger_unlink(self, file_path: str) -> bool:
        return self._record("unlink", file_path)

    async def advance(self, ms: int) -> int:
        """Move the virtual clock forward and deliver every settled path."""
        self._clock_ms += ms
        threshold = self._config.stabilityThreshold if self._config else 0
        settled = [
            path for path in self._pending
            if self._clock_ms - self._last_seen[path] >= threshold
        ]
        for path in settled:
            for event in self._take(path):
                await self._deliver(event)
        return len(settled)

    async def flush(self) -> int:
        paths = list(self._pending)
        for path in paths:
            for event in self._take(path):
                await self._deliver(event)
        return len(paths)

    def _record(self, change_type: ChangeType, file_path: str) -> bool:
        if not self._watching or self._config is None:
            return False
        if not matches_pattern(self._config.targetDirectory, file_path, self._config.pattern):
            return False
        self._pending[file_path] = merge_change(self._pending.get(file_path, ()), change_type)
        self._last_seen[file_path] = self._clock_ms
        return True

    def _take(self, path: str) -> list[FileChangeEvent]:
        change_types = self._pending.pop(path)
        self._last_seen.pop(path, None)
        return [FileChangeEvent(type=change_type, filePath=path) for change_type in change_types]

    async def _deliver(self, event: FileChangeEvent) -> None:
        self.delivered.append(event)
        if self._handler is not None:
            await dispatch_event(self._handler, event)
