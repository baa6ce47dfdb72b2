"""Capsule creation with validation ahead of any persistence."""

import logging
from dataclasses import dataclass
from datetime import datetime

from tcap.lifecycle.clock import Clock
from tcap.storage.database import Database
from tcap.storage.media import MediaStore
from tcap.storage.models import (
    DEFAULT_LIFETIME,
    DEFAULT_VIEW_DURATION,
    MIN_VIEW_DURATION,
    Capsule,
    CapsuleType,
)

logger = logging.getLogger(__name__)


@dataclass
class MediaUpload:
    """Raw media submitted with a capsule."""

    data: bytes
    content_type: str
    filename: str = ""


@dataclass
class CapsuleDraft:
    """User input for a new capsule."""

    content: str = ""
    name: str = ""
    available_at: datetime | None = None
    view_duration: float = DEFAULT_VIEW_DURATION
    upload: MediaUpload | None = None


def view_duration_from_parts(hours: int = 0, minutes: int = 0, seconds: int = 0) -> int:
    """Combine an hours/minutes/seconds picker into seconds."""
    return max(0, hours) * 3600 + max(0, minutes) * 60 + max(0, seconds)


def validate_draft(draft: CapsuleDraft, now: datetime, media: MediaStore) -> CapsuleType:
    """Validate a draft and return the capsule type it produces.

    Raises:
        ValueError: For invalid durations, schedules or empty content.
        UnsupportedType: If the upload is not an image or video.
        UploadTooLarge: If the upload exceeds the store's limit.
    """
    if draft.view_duration < MIN_VIEW_DURATION:
        raise ValueError(f"View duration must be at least {MIN_VIEW_DURATION:.0f} seconds")

    available_at = draft.available_at or now
    if available_at >= now + DEFAULT_LIFETIME:
        raise ValueError("Capsule must become available before it expires")

    if draft.upload is None:
        if not draft.content.strip():
            raise ValueError("Text capsules need some content")
        return CapsuleType.TEXT

    return media.validate(len(draft.upload.data), draft.upload.content_type)


async def create_capsule(
    draft: CapsuleDraft,
    *,
    database: Database,
    media: MediaStore,
    clock: Clock,
) -> Capsule:
    """Validate a draft, store its media and insert the capsule record.

    Nothing is persisted when validation fails. If the record insert fails
    after the media was stored, the media is removed again.
    """
    now = clock.now()
    capsule_type = validate_draft(draft, now, media)

    media_path: str | None = None
    content = draft.content
    if draft.upload is not None:
        media_path = await media.put(
            draft.upload.data, draft.upload.content_type, draft.upload.filename
        )
        content = draft.upload.filename or media_path

    capsule = Capsule(
        name=draft.name.strip(),
        type=capsule_type,
        content=content,
        media_path=media_path,
        created_at=now,
        available_at=draft.available_at or now,
        expires_at=now + DEFAULT_LIFETIME,
        view_duration=float(draft.view_duration),
    )

    try:
        await database.insert(capsule)
    except Exception:
        if media_path:
            await media.delete(media_path)
        raise

    logger.info(
        f"Created {capsule.type.value} capsule {capsule.id} "
        f"available at {capsule.available_at.isoformat()}"
    )
    return capsule
