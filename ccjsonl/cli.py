"""Command line entry points.

Usage:
  ccjsonl batch [--target-dir DIR]          one reconciliation pass, then exit
  ccjsonl watch [--target-dir DIR]          watcher + periodic reconciliation until interrupted
  ccjsonl reconcile-loop [--target-dir DIR] periodic reconciliation only
  ccjsonl serve                             ingestion API (uvicorn)
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import signal

from ccjsonl import config
from ccjsonl.context import build_context
from ccjsonl.db import connection, migrations
from ccjsonl.db.batch_processor import BatchProcessor
from ccjsonl.db.reconciler import PeriodicReconciler
from ccjsonl.errors import IngestionError
from ccjsonl.pipeline import IngestionPipeline

logger = logging.getLogger("ccjsonl.cli")


async def _open(db_path: str | None):
    db = await connection.open_connection(db_path=db_path)
    await migrations.run_migrations(db)
    return db


async def _run_batch(target_dir: str, db_path: str | None, max_workers: int) -> int:
    db = await _open(db_path)
    try:
        ctx = build_context(db)
        processor = BatchProcessor(ctx, max_workers=max_workers)
        reconciler = PeriodicReconciler(
            ctx, processor.submit, target_dir, pattern=config.WATCH_PATTERN, run_on_start=False
        )
        try:
            result = await reconciler.reconcile_once()
        except IngestionError as e:
            print(f"Batch failed: [{e.code}] {e.message}")
            return 1
        await processor.drain()
        counters = processor.snapshot()["counters"]
        print(
            f"scanned={result.scannedFiles} processed={counters['processed']} "
            f"up_to_date={counters['up_to_date']} failed={counters['failed']} "
            f"conflicts={counters['conflicts']} removed={counters['removed']} "
            f"entries={counters['entries_applied']} messages={counters['messages_inserted']}"
        )
        return 1 if counters["failed"] else 0
    finally:
        await connection.close_connection(db)


async def _wait_for_signal() -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C raises instead.
            pass
    await stop.wait()


async def _run_pipeline(target_dir: str, db_path: str | None, max_workers: int, watch: bool) -> int:
    db = await _open(db_path)
    pipeline = IngestionPipeline(
        build_context(db),
        config.watcher_config(target_dir),
        max_workers=max_workers,
        enable_watcher=watch,
    )
    try:
        try:
            await pipeline.start()
        except IngestionError as e:
            print(f"Failed to start: [{e.code}] {e.message}")
            return 1
        await _wait_for_signal()
        return 0
    finally:
        await pipeline.stop()
        await connection.close_connection(db)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="ccjsonl")
    parser.add_argument("command", choices=["batch", "watch", "reconcile-loop", "serve"])
    parser.add_argument("--target-dir", default=str(config.WATCH_TARGET_DIR), help="Transcript root directory")
    parser.add_argument("--db-path", default="", help="SQLite database file (default: CCJSONL_DB_PATH)")
    parser.add_argument("--max-workers", type=int, default=config.MAX_CONCURRENCY, help="Files processed concurrently")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO)

    if args.command == "serve":
        from ccjsonl.main import run

        run()
        return 0

    db_path = args.db_path or None
    if args.command == "batch":
        return asyncio.run(_run_batch(args.target_dir, db_path, args.max_workers))
    return asyncio.run(
        _run_pipeline(args.target_dir, db_path, args.max_workers, watch=args.command == "watch")
    )


if __name__ == "__main__":
    raise SystemExit(main())
