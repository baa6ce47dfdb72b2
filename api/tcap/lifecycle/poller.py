"""Availability poller that keeps a capsule listing current.

The poller refreshes on start, on a fixed sweep interval and whenever the
change channel signals; bursts of signals are debounced into one refresh.
Each refresh sweeps expired capsules, re-fetches the visible ones and
publishes a ``Listing`` to subscribers. Fetch failures are retried with a
linear backoff; when retries run out the last good listing is republished
flagged as stale and the loop carries on.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol
from uuid import UUID

from tcap.lifecycle.clock import Clock, get_clock
from tcap.lifecycle.engine import LifecycleEngine, ListingBucket, bucket
from tcap.storage.models import Capsule

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL = 60.0
DEFAULT_DEBOUNCE = 0.3
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 3.0


class CapsuleSource(Protocol):
    """Where a poller gets its capsules from."""

    async def sweep_expired(self) -> list[UUID]: ...

    async def list_visible(self) -> list[Capsule]: ...


class LocalCapsuleSource:
    """Capsule source backed directly by the lifecycle engine."""

    def __init__(self, engine: LifecycleEngine, limit: int = 500):
        self.engine = engine
        self.limit = limit

    async def sweep_expired(self) -> list[UUID]:
        return await self.engine.sweep()

    async def list_visible(self) -> list[Capsule]:
        return await self.engine.database.list_where(self.engine.now(), self.limit)


@dataclass
class Listing:
    """Snapshot of the capsules visible at ``fetched_at``."""

    capsules: list[Capsule] = field(default_factory=list)
    upcoming: list[Capsule] = field(default_factory=list)
    expiring: list[Capsule] = field(default_factory=list)
    fetched_at: datetime | None = None
    stale: bool = False
    error: str | None = None

    @classmethod
    def build(
        cls,
        capsules: list[Capsule],
        now: datetime,
        *,
        stale: bool = False,
        error: str | None = None,
    ) -> "Listing":
        """Classify capsules at ``now``, dropping any that have expired."""
        listing = cls(fetched_at=now, stale=stale, error=error)
        for capsule in capsules:
            section = bucket(capsule, now)
            if section is None:
                continue
            listing.capsules.append(capsule)
            if section is ListingBucket.EXPIRING:
                listing.expiring.append(capsule)
            else:
                listing.upcoming.append(capsule)
        return listing


ListingCallback = Callable[[Listing], None]
ChangeStream = Callable[[], AsyncIterator[Any]]


class AvailabilityPoller:
    """Keeps a near-real-time listing of visible capsules."""

    def __init__(
        self,
        source: CapsuleSource,
        *,
        clock: Clock | None = None,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        debounce: float = DEFAULT_DEBOUNCE,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        changes: ChangeStream | None = None,
    ):
        """Initialize the poller.

        Args:
            source: Capsule source to sweep and list.
            clock: Time source used to classify capsules.
            sweep_interval: Seconds between scheduled refreshes.
            debounce: Delay that coalesces bursts of change signals.
            max_retries: Retries per refresh before reporting stale data.
            retry_delay: Base delay; retry ``n`` waits ``retry_delay * n``.
            changes: Factory for an async iterator of change signals.
        """
        self.source = source
        self.clock = clock or get_clock()
        self.sweep_interval = sweep_interval
        self.debounce = debounce
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.changes = changes

        self._subscribers: list[ListingCallback] = []
        self._latest: Listing | None = None
        self._running = False
        self._tasks: list[asyncio.Task] = []
        self._refresh_tasks: set[asyncio.Task] = set()
        self._debounce_pending = False
        self._generation = 0
        self._published_generation = 0

    @property
    def latest(self) -> Listing | None:
        """Most recently published listing."""
        return self._latest

    @property
    def is_running(self) -> bool:
        return self._running

    def subscribe(self, callback: ListingCallback) -> Callable[[], None]:
        """Register a listener. Returns a function that unregisters it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    # ============== Refresh ==============

    async def _fetch(self) -> Listing:
        try:
            await self.source.sweep_expired()
        except Exception as e:
            logger.warning(f"Expiry sweep failed: {e}")

        capsules = await self.source.list_visible()
        return Listing.build(capsules, self.clock.now())

    def _stale_listing(self, error: str) -> Listing:
        previous = self._latest.capsules if self._latest else []
        return Listing.build(previous, self.clock.now(), stale=True, error=error)

    def _publish(self, listing: Listing, generation: int) -> None:
        # An older refresh finishing late must not overwrite a newer result
        if generation < self._published_generation:
            return
        self._published_generation = generation
        self._latest = listing
        for callback in list(self._subscribers):
            try:
                callback(listing)
            except Exception as e:
                logger.error(f"Listing subscriber failed: {e}")

    async def refresh(self) -> Listing:
        """Sweep, re-fetch and publish, retrying failed fetches."""
        self._generation += 1
        generation = self._generation

        attempt = 0
        while True:
            try:
                listing = await self._fetch()
                break
            except Exception as e:
                attempt += 1
                if attempt > self.max_retries:
                    logger.warning(
                        f"Refresh failed after {self.max_retries} retries, "
                        f"keeping stale listing: {e}"
                    )
                    listing = self._stale_listing(str(e))
                    break
                delay = self.retry_delay * attempt
                logger.warning(
                    f"Refresh failed ({e}); retry {attempt}/{self.max_retries} "
                    f"in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

        self._publish(listing, generation)
        return listing

    # ============== Triggers ==============

    def notify_change(self) -> None:
        """Schedule a debounced refresh after a change signal."""
        if not self._running or self._debounce_pending:
            return
        self._debounce_pending = True
        task = asyncio.create_task(self._debounced_refresh())
        self._refresh_tasks.add(task)
        task.add_done_callback(self._refresh_tasks.discard)

    async def _debounced_refresh(self) -> None:
        try:
            await asyncio.sleep(self.debounce)
        finally:
            self._debounce_pending = False
        await self.refresh()

    async def _interval_loop(self) -> None:
        while self._running:
            await self.refresh()
            await asyncio.sleep(self.sweep_interval)

    async def _change_loop(self) -> None:
        assert self.changes is not None
        while self._running:
            try:
                async for _signal in self.changes():
                    self.notify_change()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Change subscription failed: {e}")
            await asyncio.sleep(self.retry_delay)

    def start(self) -> None:
        """Start the refresh loops."""
        if self._running:
            return

        self._running = True
        self._tasks.append(asyncio.create_task(self._interval_loop()))
        if self.changes is not None:
            self._tasks.append(asyncio.create_task(self._change_loop()))
        logger.info(f"Started availability poller (sweep every {self.sweep_interval}s)")

    def stop(self) -> None:
        """Cancel every loop and pending refresh."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        self._tasks.clear()
        # Refreshes may still be in retry backoff after their debounce fired
        for task in list(self._refresh_tasks):
            task.cancel()
        self._refresh_tasks.clear()
        self._debounce_pending = False
        logger.info("Stopped availability poller")

    async def __aenter__(self) -> "AvailabilityPoller":
        self.start()
        return self

    async def __aexit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.stop()
