"""
FastAPI service for mailbox synchronization.

Wires the sync engine together at startup:
- MongoDB stores and indexes
- Credential gate, job scheduler, ingestion pipeline and sync worker
- Recurring scheduled-sync sweep and stuck-run watchdog
"""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from mailsync.core.config import settings
from mailsync.core.credentials import StoredCredentialGate
from mailsync.core.database import DatabaseManager
from mailsync.routers import sync_router
from mailsync.services.hooks import create_hooks
from mailsync.services.ingestion import IngestionPipeline
from mailsync.services.orchestrator import SyncOrchestrator
from mailsync.workers.scheduler import (
    SCHEDULED_SYNC_JOB,
    SYNC_JOB,
    WATCHDOG_JOB,
    AsyncioJobScheduler,
)
from mailsync.workers.sync_worker import SyncWorker

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Application lifespan manager - startup and shutdown."""
    logger.info("Starting mail sync service...")

    db_manager = DatabaseManager(settings)
    await db_manager.connect()
    app.state.db = db_manager

    scheduler = AsyncioJobScheduler()
    pipeline = IngestionPipeline(
        db_manager.messages,
        db_manager.accounts,
        settings=settings,
        **create_hooks(settings, db_manager.db),
    )
    worker = SyncWorker(
        db_manager,
        StoredCredentialGate(db_manager.accounts, settings=settings),
        scheduler,
        pipeline=pipeline,
        settings=settings,
    )
    orchestrator = SyncOrchestrator(db_manager.accounts, scheduler, settings)

    scheduler.register(SYNC_JOB, worker.run)
    scheduler.register(SCHEDULED_SYNC_JOB, orchestrator.run_scheduled_sweep)
    scheduler.register(WATCHDOG_JOB, orchestrator.run_watchdog)
    scheduler.schedule_recurring(SCHEDULED_SYNC_JOB, settings.scheduled_sync_interval_minutes * 60)
    scheduler.schedule_recurring(WATCHDOG_JOB, settings.watchdog_interval_seconds)

    app.state.scheduler = scheduler
    app.state.pipeline = pipeline
    app.state.orchestrator = orchestrator

    logger.info(f"API ready at http://0.0.0.0:{settings.api_port}")

    yield

    logger.info("Shutting down mail sync service...")
    await scheduler.shutdown()
    await pipeline.drain()
    await db_manager.disconnect()


app = FastAPI(
    title="Mail Sync API",
    description="Mailbox synchronization for Microsoft 365, Gmail and IMAP accounts.",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============== Exception Handlers ==============

def _get_error_id() -> str:
    """Generate a unique error ID for tracking."""
    return str(uuid.uuid4())[:8]


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    error_id = _get_error_id()
    logger.warning(
        f"HTTP {exc.status_code} [{error_id}] on {request.method} {request.url.path}: "
        f"{exc.detail}"
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": f"http_{exc.status_code}",
            "message": exc.detail,
            "error_id": error_id,
        }
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    error_id = _get_error_id()
    logger.exception(f"Unhandled exception [{error_id}] on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_error",
            "message": f"An unexpected error occurred. Reference: {error_id}",
            "error_id": error_id,
        }
    )


app.include_router(sync_router, prefix="/api/v1/mail")


@app.get("/health")
async def health(request: Request):
    """Health check, including the database connection."""
    try:
        connected = await request.app.state.db.ping()
    except Exception as e:
        logger.warning(f"Health check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "unhealthy", "database": str(e)})
    if not connected:
        return JSONResponse(status_code=503, content={"status": "unhealthy", "database": "disconnected"})
    return {"status": "healthy", "database": "connected"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "mailsync.main:app",
        host="0.0.0.0",
        port=settings.api_port,
        reload=settings.debug,
    )
