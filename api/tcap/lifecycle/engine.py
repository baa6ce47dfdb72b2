"""Capsule lifecycle state machine and remaining-view-time accounting.

A capsule moves through ``locked -> unlocked -> opened -> expired``. None of
these states is stored; they are derived from the record and the current time.
The pure functions here never touch I/O. ``LifecycleEngine`` binds them to the
record store and media store for the two side effects the machine needs:
writing the first-open anchor and deleting expired capsules.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from uuid import UUID

from tcap.errors import MediaUnavailable
from tcap.lifecycle.clock import Clock, get_clock
from tcap.storage.database import Database
from tcap.storage.media import MediaStore
from tcap.storage.models import Capsule

logger = logging.getLogger(__name__)


class LifecycleState(str, Enum):
    """Derived lifecycle state of a capsule."""

    LOCKED = "locked"  # now < available_at
    UNLOCKED = "unlocked"  # available, never opened
    OPENED = "opened"  # viewing window running
    EXPIRED = "expired"  # terminal, record is deleted


class ListingBucket(str, Enum):
    """Listing section a capsule is shown in."""

    UPCOMING = "upcoming"
    EXPIRING = "expiring"


# ============== Pure accounting ==============


def remaining_time(capsule: Capsule, now: datetime) -> float:
    """Seconds of viewing time left, anchored to the first open.

    Never negative and never more than ``view_duration``.
    """
    if capsule.first_opened_at is None:
        return float(capsule.view_duration)
    return max(0.0, capsule.view_duration - capsule.elapsed(now))


def time_until_available(capsule: Capsule, now: datetime) -> float:
    """Seconds until the capsule unlocks, zero once it has."""
    return max(0.0, (capsule.available_at - now).total_seconds())


def classify(capsule: Capsule, now: datetime) -> LifecycleState:
    """Compute the lifecycle state of a capsule at ``now``.

    The hard expiry ceiling and view-time exhaustion are independent
    triggers: either one is enough to expire a capsule.
    """
    if now > capsule.expires_at:
        return LifecycleState.EXPIRED
    if capsule.is_partially_viewed and remaining_time(capsule, now) <= 0:
        return LifecycleState.EXPIRED
    if now < capsule.available_at:
        return LifecycleState.LOCKED
    if capsule.is_partially_viewed:
        return LifecycleState.OPENED
    return LifecycleState.UNLOCKED


def bucket(capsule: Capsule, now: datetime) -> ListingBucket | None:
    """Listing section for a capsule, None once it has expired."""
    state = classify(capsule, now)
    if state is LifecycleState.EXPIRED:
        return None
    if state is LifecycleState.OPENED:
        return ListingBucket.EXPIRING
    return ListingBucket.UPCOMING


# ============== Results ==============


class OpenStatus(str, Enum):
    """Outcome of an open request."""

    OPENED = "opened"  # first open, anchor written
    RESUMED = "resumed"  # anchor already set, nothing written
    NOT_YET_AVAILABLE = "not_yet_available"
    ALREADY_EXPIRED = "already_expired"
    NOT_FOUND = "not_found"


@dataclass
class OpenResult:
    """Result of ``LifecycleEngine.open``."""

    status: OpenStatus
    capsule: Capsule | None = None
    remaining: float = 0.0
    available_in: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status in (OpenStatus.OPENED, OpenStatus.RESUMED)


class LoadStatus(str, Enum):
    """Outcome of loading a capsule for viewing."""

    READY = "ready"
    NOT_YET_AVAILABLE = "not_yet_available"
    ALREADY_EXPIRED = "already_expired"
    NOT_FOUND = "not_found"


@dataclass
class LoadResult:
    """Result of ``LifecycleEngine.load``."""

    status: LoadStatus
    capsule: Capsule | None = None
    state: LifecycleState | None = None
    remaining: float = 0.0
    available_in: float = 0.0


@dataclass
class DeleteResult:
    """What ``expire_and_delete`` actually removed."""

    capsule_id: UUID
    record_deleted: bool = False
    media_deleted: bool = False


# ============== Side effects ==============


class LifecycleEngine:
    """Applies lifecycle transitions against the stores.

    The engine keeps no capsule state of its own: each call reads a snapshot,
    decides, and issues a single update or delete. It never retries; callers
    decide whether a failure is worth another attempt.
    """

    def __init__(
        self,
        database: Database,
        media: MediaStore,
        clock: Clock | None = None,
    ):
        self.database = database
        self.media = media
        self.clock = clock or get_clock()

    def now(self) -> datetime:
        return self.clock.now()

    async def load(self, capsule_id: UUID) -> LoadResult:
        """Fetch a capsule for a detail view.

        Expired capsules are cleaned up on the spot and reported as such.
        """
        capsule = await self.database.get(capsule_id)
        if capsule is None:
            return LoadResult(status=LoadStatus.NOT_FOUND)

        now = self.now()
        state = classify(capsule, now)
        if state is LifecycleState.EXPIRED:
            await self.expire_and_delete(capsule)
            return LoadResult(status=LoadStatus.ALREADY_EXPIRED, state=state)
        if state is LifecycleState.LOCKED:
            return LoadResult(
                status=LoadStatus.NOT_YET_AVAILABLE,
                capsule=capsule,
                state=state,
                remaining=remaining_time(capsule, now),
                available_in=time_until_available(capsule, now),
            )
        return LoadResult(
            status=LoadStatus.READY,
            capsule=capsule,
            state=state,
            remaining=remaining_time(capsule, now),
        )

    async def open(self, capsule_id: UUID) -> OpenResult:
        """Start or resume the viewing window of a capsule.

        Only the first successful call writes the anchor; later calls are
        no-ops that return the stored snapshot.
        """
        capsule = await self.database.get(capsule_id)
        if capsule is None:
            return OpenResult(status=OpenStatus.NOT_FOUND)

        now = self.now()
        state = classify(capsule, now)

        if state is LifecycleState.EXPIRED:
            await self.expire_and_delete(capsule)
            return OpenResult(status=OpenStatus.ALREADY_EXPIRED)

        if state is LifecycleState.LOCKED:
            return OpenResult(
                status=OpenStatus.NOT_YET_AVAILABLE,
                capsule=capsule,
                remaining=remaining_time(capsule, now),
                available_in=time_until_available(capsule, now),
            )

        if capsule.first_opened_at is not None:
            return OpenResult(
                status=OpenStatus.RESUMED,
                capsule=capsule,
                remaining=remaining_time(capsule, now),
            )

        written = await self.database.mark_opened(
            capsule.id, now, capsule.view_duration
        )
        if not written:
            # Another client set the anchor first; theirs stands
            current = await self.database.get(capsule.id)
            if current is None:
                return OpenResult(status=OpenStatus.NOT_FOUND)
            return OpenResult(
                status=OpenStatus.RESUMED,
                capsule=current,
                remaining=remaining_time(current, now),
            )

        capsule.is_opened = True
        capsule.first_opened_at = now
        capsule.remaining_duration = capsule.view_duration
        logger.info(f"Opened capsule {capsule.id} ({capsule.view_duration:.0f}s to view)")
        return OpenResult(
            status=OpenStatus.OPENED,
            capsule=capsule,
            remaining=remaining_time(capsule, now),
        )

    async def expire_and_delete(self, capsule: Capsule) -> DeleteResult:
        """Delete a capsule's media, then its record.

        Safe to call twice or concurrently: anything already gone counts as
        deleted. A media failure leaves the record in place so the blob is
        not orphaned; the next sweep tries again.
        """
        result = DeleteResult(capsule_id=capsule.id)
        if capsule.media_path:
            result.media_deleted = await self.media.delete(capsule.media_path)
        result.record_deleted = await self.database.delete(capsule.id)
        if result.record_deleted:
            logger.info(f"Expired capsule {capsule.id}")
        return result

    async def sweep(self) -> list[UUID]:
        """Delete every capsule that has reached the expired state.

        Returns:
            IDs of the capsules this sweep found expired.
        """
        now = self.now()
        removed: list[UUID] = []
        for capsule in await self.database.list_all():
            if classify(capsule, now) is not LifecycleState.EXPIRED:
                continue
            try:
                await self.expire_and_delete(capsule)
            except MediaUnavailable as e:
                logger.error(f"Failed to delete media for capsule {capsule.id}: {e}")
                continue
            removed.append(capsule.id)

        if removed:
            logger.info(f"Sweep removed {len(removed)} expired capsules")
        return removed


# Global engine instance
_engine: LifecycleEngine | None = None


def get_lifecycle_engine() -> LifecycleEngine:
    """Get or create the global lifecycle engine."""
    global _engine
    if _engine is None:
        from tcap.storage import get_database, get_media_store

        _engine = LifecycleEngine(get_database(), get_media_store())
    return _engine


def reset_lifecycle_engine() -> None:
    """Reset the global lifecycle engine (useful for testing)."""
    global _engine
    _engine = None
