"""
FleetCore API - Main FastAPI application.

Driver execution and tracking core: sessions, execution events, GPS
telemetry and offline sync for field delivery drivers.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fleetcore.config import get_settings
from fleetcore.database import async_session_maker, init_db
from fleetcore.exceptions import (
    ExecutionCoreError,
    ResourceNotFound,
    StateConflict,
    TransientStorageError,
    ValidationError,
)
from fleetcore.schemas.common import RejectionResponse
from fleetcore.services.workers import start_background_workers, stop_background_workers

settings = get_settings()

_logger = logging.getLogger(__name__)

# Background worker tasks (heartbeat sweep, offline sync)
_worker_tasks: list[asyncio.Task] = []

RETRY_AFTER_SECONDS = 1


def configure_logging() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.
    Runs on startup and shutdown.
    """
    global _worker_tasks

    # Startup
    configure_logging()
    print(f"Starting {settings.app_name} in {settings.app_env} mode...", flush=True)
    await init_db()
    print("Database initialized.", flush=True)

    if settings.enable_background_workers:
        print("Starting background workers...", flush=True)
        _worker_tasks = start_background_workers(async_session_maker)
    else:
        print("Background workers: Disabled by config", flush=True)

    yield

    # Shutdown
    print("Shutting down...", flush=True)
    if _worker_tasks:
        print("Stopping background workers...", flush=True)
        await stop_background_workers(_worker_tasks)
        _worker_tasks = []


app = FastAPI(
    title=settings.app_name,
    description="Driver execution and tracking core",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# CORS middleware - allow the dispatch console and driver app to connect
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Error handling
# =============================================================================

def _rejection(status_code: int, exc: ExecutionCoreError, headers: dict | None = None) -> JSONResponse:
    body = RejectionResponse(code=exc.code, reason=exc.reason)
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return _rejection(422, exc)


@app.exception_handler(StateConflict)
async def state_conflict_handler(request: Request, exc: StateConflict):
    return _rejection(409, exc)


@app.exception_handler(ResourceNotFound)
async def not_found_handler(request: Request, exc: ResourceNotFound):
    return _rejection(404, exc)


@app.exception_handler(TransientStorageError)
async def transient_error_handler(request: Request, exc: TransientStorageError):
    _logger.warning("Transient storage error on %s %s: %s", request.method, request.url.path, exc.reason)
    return _rejection(503, exc, headers={"Retry-After": str(RETRY_AFTER_SECONDS)})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    details = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in errors[:3]
    )
    body = RejectionResponse(code="invalid_request", reason=f"{len(errors)} invalid field(s): {details}")
    return JSONResponse(status_code=422, content=body.model_dump())


@app.exception_handler(ExecutionCoreError)
async def core_error_handler(request: Request, exc: ExecutionCoreError):
    return _rejection(400, exc)


@app.get("/")
async def root():
    """Root endpoint - basic health check."""
    return {
        "app": settings.app_name,
        "version": "0.1.0",
        "status": "running",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring."""
    return {"status": "healthy"}


# Routers
from fleetcore.routers import admin, dispatch, events, sessions, sync, telemetry

app.include_router(sessions.router, prefix="/api/sessions", tags=["Sessions"])
app.include_router(events.router, prefix="/api/events", tags=["Events"])
app.include_router(telemetry.router, prefix="/api/telemetry", tags=["Telemetry"])
app.include_router(sync.router, prefix="/api/sync", tags=["Sync"])
app.include_router(dispatch.router, prefix="/api/dispatch", tags=["Dispatch"])
app.include_router(admin.router, prefix="/api/admin", tags=["Admin"])
