"""FastAPI application entry point."""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tcap import __version__
from tcap.api.routes import capsules, changes, media
from tcap.api.schemas import ErrorResponse
from tcap.config import get_settings
from tcap.errors import (
    AlreadyExpired,
    CapsuleError,
    CapsuleNotFound,
    MediaUnavailable,
    NotYetAvailable,
    StoreUnavailable,
    UnsupportedType,
    UploadTooLarge,
)
from tcap.lifecycle import DatabaseWatcher, get_change_hub, get_lifecycle_engine
from tcap.storage import get_media_store, init_database

logger = logging.getLogger(__name__)

ERROR_STATUS: dict[type[CapsuleError], int] = {
    CapsuleNotFound: status.HTTP_404_NOT_FOUND,
    NotYetAvailable: status.HTTP_423_LOCKED,
    AlreadyExpired: status.HTTP_410_GONE,
    MediaUnavailable: status.HTTP_404_NOT_FOUND,
    StoreUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
    UploadTooLarge: 413,
    UnsupportedType: status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
}


async def _expiry_sweeper(interval: float) -> None:
    """Remove expired capsules even when no client is polling."""
    while True:
        await asyncio.sleep(interval)
        try:
            await get_lifecycle_engine().sweep()
        except Exception as e:
            logger.error(f"Background sweep failed: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Initialize services on startup and stop background work on shutdown."""
    settings = get_settings()
    database = await init_database()
    get_media_store().ensure_root()

    watcher: DatabaseWatcher | None = None
    if settings.watch_db:
        watcher = DatabaseWatcher(database.db_path, get_change_hub())
        try:
            watcher.start()
        except (ValueError, OSError) as e:
            logger.warning(f"Database watcher disabled: {e}")
            watcher = None

    sweeper = asyncio.create_task(_expiry_sweeper(settings.sweep_interval))
    yield

    sweeper.cancel()
    try:
        await sweeper
    except asyncio.CancelledError:
        pass
    if watcher is not None:
        watcher.stop()


app = FastAPI(
    title="Time Capsule API",
    description="Messages and media that unlock later and vanish after viewing",
    version=__version__,
    lifespan=lifespan,
)

# Allow CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CapsuleError)
async def capsule_error_handler(request: Request, exc: CapsuleError) -> JSONResponse:
    """Render capsule errors with their code and a matching status."""
    status_code = ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    body = ErrorResponse(
        detail=str(exc),
        code=exc.code,
        available_in=getattr(exc, "available_in", None),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


@app.get("/")
async def root() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok", "service": "timecapsule"}


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}


# Include routers
app.include_router(capsules.router, prefix="/api/capsules", tags=["capsules"])
app.include_router(changes.router, prefix="/api/changes", tags=["changes"])
app.include_router(media.router, prefix="/media", tags=["media"])
