"""Ingestion status + control API."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Literal

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from ccjsonl.errors import IngestionError
from ccjsonl.filesystem import matches_pattern
from ccjsonl.models import FileChangeEvent

logger = logging.getLogger("ccjsonl.api")

ingestion_router = APIRouter(prefix="/api/ingestion", tags=["ingestion"])


class FileEventRequest(BaseModel):
    path: str = Field(..., min_length=1)
    changeType: Literal["change", "unlink"] = "change"


def _get_pipeline(request: Request):
    pipeline = getattr(request.app.state, "pipeline", None)
    if not pipeline:
        raise HTTPException(status_code=503, detail="Ingestion pipeline not initialized")
    return pipeline


@ingestion_router.get("/status")
async def get_ingestion_status(request: Request):
    """Pipeline state plus processor counters and recent outcomes."""
    pipeline = _get_pipeline(request)
    return {
        "status": "active",
        **pipeline.status(),
        "processor": pipeline.processor.snapshot(),
    }


@ingestion_router.get("/files")
async def list_tracked_files(request: Request, includeRemoved: bool = Query(False)):
    pipeline = _get_pipeline(request)
    records = await pipeline.ctx.tracking.list_all(include_tombstoned=includeRemoved)
    return {
        "status": "ok",
        "count": len(records),
        "items": [r.model_dump() for r in records],
    }


@ingestion_router.post("/reconcile")
async def trigger_reconcile(request: Request):
    """Run one reconciliation pass now and return its counts."""
    pipeline = _get_pipeline(request)
    try:
        result = await pipeline.reconciler.reconcile_once()
    except IngestionError as e:
        logger.error(f"Reconcile request failed: {e.message}")
        raise HTTPException(status_code=503, detail=e.to_dict()) from e
    return {"status": "ok", **result.model_dump()}


@ingestion_router.post("/files")
async def enqueue_file_event(request: Request, body: FileEventRequest):
    """Queue a change or unlink for one transcript under the watch root."""
    pipeline = _get_pipeline(request)
    root = pipeline.watcher_config.targetDirectory
    path = Path(body.path).expanduser()
    if not path.is_absolute():
        path = Path(root) / path
    if not matches_pattern(root, path, pipeline.watcher_config.pattern):
        raise HTTPException(
            status_code=400,
            detail=f"Path must be a transcript under {root}: {body.path}",
        )
    event = FileChangeEvent(type=body.changeType, filePath=str(path), source="api")
    pipeline.processor.submit(event)
    return {"status": "queued", "filePath": event.filePath, "changeType": event.type}
