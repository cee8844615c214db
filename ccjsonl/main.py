"""FastAPI host for the ingestion pipeline."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request

from ccjsonl import __version__, config
from ccjsonl.context import build_context
from ccjsonl.db import connection, migrations
from ccjsonl.observability import initialize as initialize_observability, shutdown as shutdown_observability
from ccjsonl.pipeline import IngestionPipeline
from ccjsonl.routers.ingestion import ingestion_router

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("ccjsonl")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("cc-jsonl ingestion starting up")
    initialize_observability(app)

    db = await connection.open_connection()
    app.state.db = db
    try:
        await migrations.run_migrations(db)
        ctx = build_context(db)
        pipeline = IngestionPipeline(ctx)
        # A watcher that cannot start aborts startup.
        await pipeline.start()
    except Exception:
        await connection.close_connection(db)
        app.state.db = None
        raise
    app.state.pipeline = pipeline

    yield

    logger.info("cc-jsonl ingestion shutting down")
    await pipeline.stop()
    app.state.pipeline = None
    shutdown_observability(app)
    await connection.close_connection(db)
    app.state.db = None


app = FastAPI(
    title="cc-jsonl ingestion API",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(ingestion_router)


@app.get("/api/health")
def health(request: Request):
    """Health check endpoint."""
    pipeline = getattr(request.app.state, "pipeline", None)
    return {
        "status": "ok",
        "db": "connected" if getattr(request.app.state, "db", None) is not None else "disconnected",
        "watcher": "running" if pipeline and pipeline.watcher.is_watching() else "stopped",
        "reconciler": "running" if pipeline and pipeline.reconciler.is_running() else "stopped",
    }


def run() -> None:
    uvicorn.run("ccjsonl.main:app", host=config.HOST, port=config.PORT)
