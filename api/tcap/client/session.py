"""Client-side view of a single capsule with optimistic opening."""

import logging
from dataclasses import replace
from uuid import UUID

from tcap.client.api import CapsuleClient, capsule_from_payload
from tcap.errors import CapsuleNotFound
from tcap.lifecycle.clock import Clock, get_clock
from tcap.lifecycle.engine import LifecycleState, classify, remaining_time
from tcap.storage.models import Capsule

logger = logging.getLogger(__name__)


class ViewSession:
    """Tracks one capsule the way a detail screen sees it.

    ``open`` applies the anchor locally before the server confirms it so a
    countdown can start at once. The server snapshot always replaces the
    tentative one; if the call fails the session rolls back to the last
    confirmed snapshot and the error propagates.
    """

    def __init__(self, client: CapsuleClient, capsule: Capsule, clock: Clock | None = None):
        self.client = client
        self.clock = clock or get_clock()
        self.capsule = capsule
        self.media_url: str | None = None
        self._confirmed = capsule

    @classmethod
    async def load(
        cls, client: CapsuleClient, capsule_id: UUID | str, clock: Clock | None = None
    ) -> "ViewSession":
        """Fetch a capsule and start a session for it."""
        data = await client.get_capsule(capsule_id)
        session = cls(client, capsule_from_payload(data), clock=clock)
        session._set_media_url(data.get("media_url"))
        return session

    @property
    def confirmed(self) -> Capsule:
        """Last snapshot the server agreed with."""
        return self._confirmed

    @property
    def state(self) -> LifecycleState:
        return classify(self.capsule, self.clock.now())

    def remaining(self) -> float:
        return remaining_time(self.capsule, self.clock.now())

    def _set_media_url(self, url: str | None) -> None:
        self.media_url = self.client.absolute_url(url) if url else None

    async def open(self) -> Capsule:
        """Open the capsule, optimistically starting the viewing window."""
        if self._confirmed.first_opened_at is None:
            self.capsule = replace(
                self._confirmed, is_opened=True, first_opened_at=self.clock.now()
            )

        try:
            data = await self.client.open_capsule(self._confirmed.id)
        except Exception:
            self.capsule = self._confirmed
            raise

        confirmed = capsule_from_payload(data["capsule"])
        self._confirmed = confirmed
        self.capsule = confirmed
        self._set_media_url(data["capsule"].get("media_url"))
        logger.debug(f"Capsule {confirmed.id} {data['status']}, {self.remaining():.1f}s left")
        return confirmed

    async def expire(self, capsule: Capsule | None = None) -> None:
        """Delete the capsule on the server once its time is up."""
        target = capsule or self.capsule
        try:
            await self.client.delete_capsule(target.id)
        except CapsuleNotFound:
            logger.debug(f"Capsule {target.id} was already deleted")
