"""Data models for the capsule storage layer."""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from uuid import UUID, uuid4

# Hard ceiling on how long any capsule lives, independent of viewing
DEFAULT_LIFETIME = timedelta(hours=24)

# Smallest viewing budget a capsule may be created with (seconds)
MIN_VIEW_DURATION = 5.0

DEFAULT_VIEW_DURATION = 15.0


def _utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(UTC)


class CapsuleType(str, Enum):
    """Kind of content stored in a capsule."""

    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"

    @property
    def default_name(self) -> str:
        """Display label used when a capsule is created without a name."""
        return f"{self.value.capitalize()} Capsule"

    @property
    def has_media(self) -> bool:
        return self is not CapsuleType.TEXT


@dataclass
class Capsule:
    """Content that unlocks at ``available_at`` and self-destructs later."""

    id: UUID = field(default_factory=uuid4)
    name: str = ""
    type: CapsuleType = CapsuleType.TEXT
    content: str = ""
    media_path: str | None = None
    created_at: datetime = field(default_factory=_utc_now)
    available_at: datetime = field(default_factory=_utc_now)
    expires_at: datetime | None = None
    view_duration: float = DEFAULT_VIEW_DURATION
    is_opened: bool = False
    first_opened_at: datetime | None = None
    remaining_duration: float | None = None

    def __post_init__(self) -> None:
        if not self.name.strip():
            self.name = self.type.default_name
        if self.expires_at is None:
            self.expires_at = self.created_at + DEFAULT_LIFETIME
        if self.remaining_duration is None and not self.is_opened:
            self.remaining_duration = self.view_duration

    def is_available(self, now: datetime) -> bool:
        """Whether the scheduled unlock time has been reached."""
        return now >= self.available_at

    @property
    def is_partially_viewed(self) -> bool:
        """Whether a viewing window has been started."""
        return self.is_opened and self.first_opened_at is not None

    def elapsed(self, now: datetime) -> float:
        """Seconds of viewing time consumed since the first open."""
        if self.first_opened_at is None:
            return 0.0
        return max(0.0, (now - self.first_opened_at).total_seconds())
