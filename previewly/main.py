#!/usr/bin/env python3
"""
Previewly - Main Entry Point

This is the thin orchestration layer that:
1. Loads configuration
2. Initializes modules
3. Runs the API and the expiry sweeper

All business logic is in the modules, following black box principles.
"""

import asyncio
import logging
import logging.config as log_config
from contextlib import asynccontextmanager
from typing import List, Optional

import redis.asyncio as redis
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse

from previewly.config.provider import ConfigProvider, EnvConfigProvider
from previewly.logging_config import get_logging_config
from previewly.modules.api import (
    ActiveSessionResponse,
    CleanupResponse,
    DeleteFileRequest,
    ErrorResponse,
    FileOperationResponse,
    FileResultResponse,
    HealthResponse,
    SessionResponse,
    SyncFilesRequest,
    SyncResponse,
    UpdateFileRequest,
    WorkspaceRequest,
)

# Import modules through their black box interfaces
from previewly.modules.config import get_config
from previewly.modules.errors import (
    ActiveSessionConflict,
    InvalidStateTransition,
    NotFoundError,
    PreviewError,
    SessionChanged,
    StateTimeoutError,
    StoreError,
    UnreachableError,
)
from previewly.modules.machines import MachineModule
from previewly.modules.polling import Clock, PollSchedule
from previewly.modules.session import MemorySessionStore, RedisSessionStore, SessionModule, SessionStore
from previewly.modules.storage import StorageModule
from previewly.modules.sweeper import SweeperModule
from previewly.modules.sync import SyncModule

load_dotenv()

# Get configuration
config = get_config()

log_config.dictConfig(get_logging_config(config.get("log_level")))
logger = logging.getLogger("previewly.api")

# Configuration provider (centralized config access)
config_provider: ConfigProvider = EnvConfigProvider()

# Module instances (initialized at startup)
storage: Optional[StorageModule] = None
session_store: Optional[SessionStore] = None
machine_module: Optional[MachineModule] = None
sync_module: Optional[SyncModule] = None
session_module: Optional[SessionModule] = None
sweeper: Optional[SweeperModule] = None


def build_session_module(
    store: SessionStore,
    provider: Optional[ConfigProvider] = None,
    clock: Optional[Clock] = None,
) -> SessionModule:
    """Wire the control-plane client, the sync client and a store into a SessionModule."""
    provider = provider or config_provider
    clock = clock or Clock()
    machine_config = provider.get_machine_config()
    settings = provider.get_preview_settings()

    if not machine_config.is_configured:
        logger.warning("MACHINES_API_TOKEN is not set - preview machines cannot be provisioned")

    machines = MachineModule(
        machine_config,
        clock=clock,
        poll_schedule=PollSchedule(
            interval=settings.poll_interval_seconds,
            factor=settings.poll_backoff_factor,
            max_interval=settings.poll_max_interval_seconds,
        ),
    )
    sync = SyncModule(
        clock=clock,
        health_attempts=settings.health_attempts,
        health_interval=settings.health_interval_seconds,
        health_timeout=settings.health_timeout_seconds,
        request_timeout=settings.sync_timeout_seconds,
    )
    return SessionModule(
        machines,
        store,
        sync,
        settings=settings,
        clock=clock,
        default_region=machine_config.region,
    )


async def build_session_store(storage_module: Optional[StorageModule]) -> SessionStore:
    """Create the configured session store backend."""
    if config.get("session_store") == "memory":
        logger.warning("Using in-memory session store - sessions are lost on restart")
        return MemorySessionStore()
    return RedisSessionStore(await storage_module.connect())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifecycle - initialize and cleanup resources.
    """
    global storage, session_store, machine_module, sync_module, session_module, sweeper

    # Startup
    logger.info("Starting Previewly API...")

    if config.get("session_store") == "redis":
        storage = StorageModule.from_config(config)
    session_store = await build_session_store(storage)

    session_module = build_session_module(session_store)
    machine_module = session_module.machines
    sync_module = session_module.sync

    sweep_interval = config.get("sweep_interval")
    if sweep_interval and sweep_interval > 0:
        sweeper = SweeperModule(session_module, interval=sweep_interval)
        sweeper.start()

    logger.info("Previewly API started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Previewly API...")

    if sweeper:
        await sweeper.stop()
    if machine_module:
        await machine_module.aclose()
    if sync_module:
        await sync_module.aclose()
    if storage:
        await storage.disconnect()
    logger.info("Previewly API shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Previewly API",
    description="Previewly - Ephemeral preview VMs for generated code",
    version="1.0.0",
    lifespan=lifespan,
)


def require_session_module() -> SessionModule:
    if not session_module:
        raise HTTPException(503, "Service not initialized")
    return session_module


# Preview Endpoints


@app.post("/preview/start", response_model=SessionResponse)
async def start_preview(request: WorkspaceRequest):
    """
    Start a preview VM for a workspace, or return the running one.

    Provisioning is shielded from client disconnects: it runs to
    completion or timeout.

    Returns:
        200: Running session with preview and sync URLs
        409: A concurrent start for the workspace won
        502: Provisioning failed
        504: Machine did not start in time
    """
    module = require_session_module()
    session = await asyncio.shield(module.start_preview(request.workspace_id))
    return SessionResponse.from_session(session)


@app.get("/preview/session", response_model=ActiveSessionResponse)
async def get_active_session(workspace_id: str = Query(..., min_length=1)):
    """
    Get the workspace's active preview session.

    Returns:
        200: {active: false} or the active session
    """
    module = require_session_module()
    session = await module.get_active_session(workspace_id)
    if not session:
        return ActiveSessionResponse(active=False)
    return ActiveSessionResponse(active=True, session=SessionResponse.from_session(session))


@app.delete("/preview/session")
async def stop_preview(workspace_id: str = Query(..., min_length=1)):
    """
    Stop the workspace's preview and destroy its VM.

    Returns:
        200: Stopped (or nothing was active)
    """
    module = require_session_module()
    session = await module.stop_preview(workspace_id)
    return {"success": True, "session_id": session.id if session else None}


@app.get("/preview/history", response_model=List[SessionResponse])
async def get_history(
    workspace_id: str = Query(..., min_length=1),
    limit: int = Query(20, ge=1, le=100),
):
    """List the workspace's sessions, newest first."""
    module = require_session_module()
    sessions = await module.get_history(workspace_id, limit)
    return [SessionResponse.from_session(s) for s in sessions]


@app.post("/preview/sync", response_model=SyncResponse)
async def sync_files(request: SyncFilesRequest):
    """
    Replace the preview's source files.

    Returns:
        200: Sync result; success_count < file_count means a partial failure
        404: No running session
        503: Sync server unreachable
        502: Sync server rejected the request
    """
    module = require_session_module()
    result = await module.sync_files(request.workspace_id, request.files)
    return SyncResponse(
        success=result.success,
        synced_at=result.synced_at,
        file_count=result.file_count,
        success_count=result.success_count,
        failed_paths=result.failed_paths,
        results=[FileResultResponse(path=r.path, status=r.status, error=r.error) for r in result.results],
    )


@app.put("/preview/file", response_model=FileOperationResponse)
async def update_file(request: UpdateFileRequest):
    """Overwrite a single file in the running preview."""
    module = require_session_module()
    await module.update_file(request.workspace_id, request.path, request.content)
    return FileOperationResponse(success=True, path=request.path)


@app.delete("/preview/file", response_model=FileOperationResponse)
async def delete_file(request: DeleteFileRequest):
    """Delete a single file from the running preview."""
    module = require_session_module()
    await module.delete_file(request.workspace_id, request.path)
    return FileOperationResponse(success=True, path=request.path)


@app.get("/preview/files")
async def list_files(workspace_id: str = Query(..., min_length=1)):
    """List the files in the running preview's project."""
    module = require_session_module()
    files = await module.list_files(workspace_id)
    return {"files": files, "count": len(files)}


@app.post("/preview/reset", response_model=SessionResponse)
async def reset_preview(request: WorkspaceRequest):
    """Restore the running preview's project to the baseline template."""
    module = require_session_module()
    session = await module.reset_preview(request.workspace_id)
    return SessionResponse.from_session(session)


@app.post("/preview/extend", response_model=SessionResponse)
async def extend_session(request: WorkspaceRequest):
    """
    Extend the active session's lifetime by one TTL.

    Returns:
        200: Session with the new expires_at
        404: No active session
    """
    module = require_session_module()
    session = await module.extend_session(request.workspace_id)
    return SessionResponse.from_session(session)


# Admin Endpoints


@app.post("/admin/cleanup", response_model=CleanupResponse)
async def cleanup_expired():
    """Run one expiry sweep now."""
    module = require_session_module()
    processed = await module.cleanup_expired_sessions()
    return CleanupResponse(processed=processed)


# Health/Monitoring Endpoints


@app.get("/healthz")
async def healthz():
    """
    Minimal health check endpoint for readiness/liveness probes.

    Returns:
        200: Service is running
    """
    return {"status": "ok"}


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Health check with session store status.

    Returns:
        200: Service healthy
        503: Service unhealthy
    """
    modules_ready = all([session_store, session_module])
    store_status = "connected" if session_store and await session_store.ping() else "disconnected"

    health = HealthResponse(
        status="healthy" if modules_ready and store_status == "connected" else "unhealthy",
        store=store_status,
        modules="initialized" if modules_ready else "not initialized",
        sweeper="running" if sweeper and sweeper.running else "disabled",
    )
    if health.status != "healthy":
        return JSONResponse(status_code=503, content=health.model_dump())
    return health


# Error handlers


def status_code_for(exc: PreviewError) -> int:
    """Map a preview error to an HTTP status code."""
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, (ActiveSessionConflict, InvalidStateTransition, SessionChanged)):
        return 409
    if isinstance(exc, StateTimeoutError):
        return 504
    if isinstance(exc, (UnreachableError, StoreError)):
        return 503
    return 502


@app.exception_handler(PreviewError)
async def preview_error_handler(request, exc):
    """Handle orchestration errors."""
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=str(exc)).model_dump())


@app.exception_handler(redis.ConnectionError)
async def redis_error_handler(request, exc):
    """Handle Redis connection errors."""
    logger.error(f"Redis connection error: {exc}")
    return JSONResponse(status_code=503, content=ErrorResponse(error="Database connection failed").model_dump())


@app.exception_handler(ValueError)
async def validation_error_handler(request, exc):
    """Handle validation errors."""
    logger.error(f"Validation error: {exc}")
    return JSONResponse(status_code=400, content=ErrorResponse(error=str(exc)).model_dump())


if __name__ == "__main__":
    uvicorn.run(
        "previewly.main:app",
        host=config.get("host"),
        port=config.get("port"),
        log_level=config.get("log_level").lower(),
        reload=config.get("debug"),
        log_config=get_logging_config(config.get("log_level")),
    )
