"""Pydantic schemas for API request/response validation."""

from datetime import UTC, datetime
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from tcap.lifecycle.engine import (
    LifecycleState,
    OpenStatus,
    classify,
    remaining_time,
    time_until_available,
)
from tcap.storage.models import DEFAULT_VIEW_DURATION, MIN_VIEW_DURATION, Capsule, CapsuleType


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class CapsuleCreateRequest(BaseModel):
    """Request schema for creating a text capsule."""

    content: str = Field(..., min_length=1, description="Text shown once the capsule is opened")
    name: str | None = Field(None, description="Display label, defaults from the type")
    available_at: datetime | None = Field(
        None,
        description="When the capsule unlocks (defaults to now, naive values are UTC)",
    )
    view_duration: float = Field(
        default=DEFAULT_VIEW_DURATION,
        ge=MIN_VIEW_DURATION,
        description="Seconds of viewing time after the first open",
    )

    @field_validator("available_at")
    @classmethod
    def _normalize_available_at(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)


class CapsuleResponse(BaseModel):
    """Response schema for a capsule.

    ``content`` and ``media_url`` are only filled in once the viewing window
    is running; listings and locked capsules never reveal them.
    """

    id: UUID
    name: str
    type: CapsuleType
    content: str | None = None
    media_url: str | None = None
    created_at: datetime
    available_at: datetime
    expires_at: datetime
    view_duration: float
    is_opened: bool
    first_opened_at: datetime | None = None
    remaining_duration: float | None = None
    state: LifecycleState
    remaining_time: float = Field(..., description="Seconds of viewing time left")
    available_in: float = Field(..., description="Seconds until the capsule unlocks")

    @classmethod
    def from_capsule(
        cls,
        capsule: Capsule,
        now: datetime,
        *,
        reveal: bool = False,
        media_url: str | None = None,
    ) -> "CapsuleResponse":
        return cls(
            id=capsule.id,
            name=capsule.name,
            type=capsule.type,
            content=capsule.content if reveal else None,
            media_url=media_url if reveal else None,
            created_at=capsule.created_at,
            available_at=capsule.available_at,
            expires_at=capsule.expires_at,
            view_duration=capsule.view_duration,
            is_opened=capsule.is_opened,
            first_opened_at=capsule.first_opened_at,
            remaining_duration=capsule.remaining_duration,
            state=classify(capsule, now),
            remaining_time=remaining_time(capsule, now),
            available_in=time_until_available(capsule, now),
        )


class CapsuleListResponse(BaseModel):
    """Response schema for the capsule listing."""

    capsules: list[CapsuleResponse]
    upcoming: list[CapsuleResponse] = Field(
        default_factory=list, description="Capsules not opened yet"
    )
    expiring: list[CapsuleResponse] = Field(
        default_factory=list, description="Opened capsules with time left"
    )
    fetched_at: datetime


class OpenResponse(BaseModel):
    """Response schema for opening a capsule."""

    status: OpenStatus
    capsule: CapsuleResponse
    remaining_time: float


class SweepResponse(BaseModel):
    """Response schema for an expiry sweep."""

    removed: list[UUID] = Field(default_factory=list)


class ChangesResponse(BaseModel):
    """Response schema for the change long-poll."""

    revision: int
    changed: bool


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
    code: str | None = None
    available_in: float | None = None
