"""Capsule API endpoints."""

import logging
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, File, Form, HTTPException, Response, UploadFile, status

from tcap.api.schemas import (
    CapsuleCreateRequest,
    CapsuleListResponse,
    CapsuleResponse,
    OpenResponse,
    SweepResponse,
    as_utc,
)
from tcap.config import get_settings
from tcap.errors import (
    AlreadyExpired,
    CapsuleNotFound,
    NotYetAvailable,
    UnsupportedType,
    UploadTooLarge,
)
from tcap.lifecycle import (
    CapsuleDraft,
    LifecycleEngine,
    Listing,
    LoadStatus,
    MediaUpload,
    OpenStatus,
    create_capsule,
    get_lifecycle_engine,
)
from tcap.storage.models import DEFAULT_VIEW_DURATION, Capsule

logger = logging.getLogger(__name__)

router = APIRouter()


def _media_url(engine: LifecycleEngine, capsule: Capsule) -> str | None:
    if not capsule.media_path:
        return None
    return engine.media.get_access_url(
        capsule.media_path, ttl=get_settings().media_url_ttl, now=engine.now()
    )


async def _create(engine: LifecycleEngine, draft: CapsuleDraft) -> CapsuleResponse:
    try:
        capsule = await create_capsule(
            draft, database=engine.database, media=engine.media, clock=engine.clock
        )
    except (UploadTooLarge, UnsupportedType):
        raise
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    return CapsuleResponse.from_capsule(capsule, engine.now())


@router.post("", response_model=CapsuleResponse, status_code=status.HTTP_201_CREATED)
async def create_text_capsule(request: CapsuleCreateRequest) -> CapsuleResponse:
    """Create a text capsule."""
    engine = get_lifecycle_engine()
    draft = CapsuleDraft(
        content=request.content,
        name=request.name or "",
        available_at=request.available_at,
        view_duration=request.view_duration,
    )
    return await _create(engine, draft)


@router.post(
    "/upload", response_model=CapsuleResponse, status_code=status.HTTP_201_CREATED
)
async def create_media_capsule(
    file: UploadFile = File(...),
    name: str = Form(""),
    available_at: datetime | None = Form(None),
    view_duration: float = Form(DEFAULT_VIEW_DURATION),
) -> CapsuleResponse:
    """Create an image or video capsule from an uploaded file.

    The capsule type follows the file's content type.
    """
    engine = get_lifecycle_engine()
    # Reject oversized uploads before buffering them
    if file.size is not None:
        engine.media.check_size(file.size)
    data = await file.read()
    draft = CapsuleDraft(
        name=name,
        available_at=as_utc(available_at),
        view_duration=view_duration,
        upload=MediaUpload(
            data=data,
            content_type=file.content_type or "",
            filename=file.filename or "",
        ),
    )
    return await _create(engine, draft)


@router.get("", response_model=CapsuleListResponse)
async def list_capsules() -> CapsuleListResponse:
    """List capsules that can still be viewed.

    Expired capsules are swept before the listing is built.
    """
    engine = get_lifecycle_engine()
    await engine.sweep()
    now = engine.now()
    listing = Listing.build(await engine.database.list_where(now), now)
    return CapsuleListResponse(
        capsules=[CapsuleResponse.from_capsule(c, now) for c in listing.capsules],
        upcoming=[CapsuleResponse.from_capsule(c, now) for c in listing.upcoming],
        expiring=[CapsuleResponse.from_capsule(c, now) for c in listing.expiring],
        fetched_at=now,
    )


@router.post("/sweep", response_model=SweepResponse)
async def sweep_capsules() -> SweepResponse:
    """Delete every expired capsule now."""
    engine = get_lifecycle_engine()
    removed = await engine.sweep()
    return SweepResponse(removed=removed)


@router.get("/{capsule_id}", response_model=CapsuleResponse)
async def get_capsule(capsule_id: UUID) -> CapsuleResponse:
    """Get a capsule for its detail view.

    Content is only included while the viewing window is running.
    """
    engine = get_lifecycle_engine()
    result = await engine.load(capsule_id)

    if result.status is LoadStatus.NOT_FOUND:
        raise CapsuleNotFound(f"Capsule {capsule_id} not found")
    if result.status is LoadStatus.ALREADY_EXPIRED:
        raise AlreadyExpired("This time capsule has expired")
    if result.status is LoadStatus.NOT_YET_AVAILABLE:
        raise NotYetAvailable(result.available_in)

    capsule = result.capsule
    reveal = capsule.is_partially_viewed
    return CapsuleResponse.from_capsule(
        capsule,
        engine.now(),
        reveal=reveal,
        media_url=_media_url(engine, capsule) if reveal else None,
    )


@router.post("/{capsule_id}/open", response_model=OpenResponse)
async def open_capsule(capsule_id: UUID) -> OpenResponse:
    """Start, or resume, the viewing window of a capsule."""
    engine = get_lifecycle_engine()
    result = await engine.open(capsule_id)

    if result.status is OpenStatus.NOT_FOUND:
        raise CapsuleNotFound(f"Capsule {capsule_id} not found")
    if result.status is OpenStatus.ALREADY_EXPIRED:
        raise AlreadyExpired("This time capsule has expired")
    if result.status is OpenStatus.NOT_YET_AVAILABLE:
        raise NotYetAvailable(result.available_in)

    capsule = result.capsule
    return OpenResponse(
        status=result.status,
        capsule=CapsuleResponse.from_capsule(
            capsule,
            engine.now(),
            reveal=True,
            media_url=_media_url(engine, capsule),
        ),
        remaining_time=result.remaining,
    )


@router.delete("/{capsule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_capsule(capsule_id: UUID) -> Response:
    """Delete a capsule and its media.

    Deleting a capsule that is already gone also succeeds.
    """
    engine = get_lifecycle_engine()
    capsule = await engine.database.get(capsule_id)
    if capsule is not None:
        await engine.expire_and_delete(capsule)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
