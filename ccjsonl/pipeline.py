"""Wires the watcher, reconciler and batch processor into one service."""
from __future__ import annotations

import logging
from typing import Any, Optional

from ccjsonl import config
from ccjsonl.context import IngestionContext
from ccjsonl.db.batch_processor import BatchProcessor
from ccjsonl.db.file_watcher import FileWatcher, WatchfilesFileWatcher
from ccjsonl.db.reconciler import PeriodicReconciler
from ccjsonl.models import WatcherConfig

logger = logging.getLogger("ccjsonl.pipeline")


class IngestionPipeline:
    """Both event sources feed the same processor intake."""

    def __init__(
        self,
        ctx: IngestionContext,
        watcher_config: Optional[WatcherConfig] = None,
        *,
        watcher: Optional[FileWatcher] = None,
        max_workers: Optional[int] = None,
        reconcile_interval_ms: Optional[int] = None,
        reconcile_on_start: Optional[bool] = None,
        enable_watcher: bool = True,
    ):
        self.ctx = ctx
        self.watcher_config = watcher_config or config.watcher_config()
        self.watcher = watcher if watcher is not None else WatchfilesFileWatcher()
        self.enable_watcher = enable_watcher
        self.processor = BatchProcessor(ctx, max_workers=max_workers)
        self.reconciler = PeriodicReconciler(
            ctx,
            self.processor.submit,
            self.watcher_config.targetDirectory,
            pattern=self.watcher_config.pattern,
            interval_ms=reconcile_interval_ms or config.RECONCILE_INTERVAL_MS,
            run_on_start=config.RECONCILE_ON_START if reconcile_on_start is None else reconcile_on_start,
        )

    async def start(self) -> None:
        """Start watching, then the reconciliation timer. WatcherError propagates."""
        if self.enable_watcher:
            await self.watcher.start(self.watcher_config, self.processor.submit)
        self.reconciler.start()
        logger.info(f"Ingestion pipeline started for {self.watcher_config.targetDirectory}")

    async def stop(self) -> None:
        await self.watcher.stop()
        await self.reconciler.stop()
        await self.processor.drain()
        logger.info("Ingestion pipeline stopped")

    def status(self) -> dict[str, Any]:
        last = self.reconciler.last_result
        return {
            "targetDirectory": self.watcher_config.targetDirectory,
            "watching": self.watcher.is_watching(),
            "reconcilerRunning": self.reconciler.is_running(),
            "lastReconcile": last.model_dump() if last else None,
            "lastReconcileError": self.reconciler.last_error,
        }
