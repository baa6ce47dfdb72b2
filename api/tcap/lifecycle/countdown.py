"""Live countdown for a capsule that is being viewed.

Each tick recomputes the remaining time from the first-open anchor instead of
decrementing a counter, so missed ticks, suspended processes and restarts all
converge on the same value.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from tcap.lifecycle.clock import Clock, get_clock
from tcap.lifecycle.engine import LifecycleState, classify, remaining_time
from tcap.storage.models import Capsule

logger = logging.getLogger(__name__)

# Tick resolution for an active detail view and for a listing
DETAIL_TICK_INTERVAL = 0.1
LIST_TICK_INTERVAL = 1.0

ExpireCallback = Callable[[Capsule], Awaitable[Any]]
FinishedCallback = Callable[[Capsule], Awaitable[None] | None]


@dataclass
class CountdownState:
    """Observable state of a driver."""

    running: bool = False
    last_remaining: float = 0.0
    expired: bool = False


class CountdownDriver:
    """Re-evaluates a capsule on a fixed interval until its time runs out.

    When the remaining time reaches zero the driver stops ticking, calls
    ``on_expire`` once (normally ``LifecycleEngine.expire_and_delete``) and
    then ``on_finished`` so the owning view can refresh or navigate away.
    """

    def __init__(
        self,
        capsule: Capsule,
        on_expire: ExpireCallback,
        *,
        clock: Clock | None = None,
        interval: float = DETAIL_TICK_INTERVAL,
        on_tick: Callable[[float], None] | None = None,
        on_finished: FinishedCallback | None = None,
    ):
        self.clock = clock or get_clock()
        self.interval = interval
        self.on_expire = on_expire
        self.on_tick = on_tick
        self.on_finished = on_finished
        self._capsule = capsule
        self._task: asyncio.Task | None = None
        self.state = CountdownState(last_remaining=remaining_time(capsule, self.clock.now()))

    @property
    def capsule(self) -> Capsule:
        return self._capsule

    def update(self, capsule: Capsule) -> None:
        """Replace the snapshot; the newest one always wins."""
        self._capsule = capsule

    def tick(self) -> float:
        """Recompute the remaining time against the current clock reading."""
        remaining = remaining_time(self._capsule, self.clock.now())
        self.state.last_remaining = remaining
        return remaining

    def is_exhausted(self) -> bool:
        now = self.clock.now()
        return (
            remaining_time(self._capsule, now) <= 0
            or classify(self._capsule, now) is LifecycleState.EXPIRED
        )

    def start(self) -> None:
        """Start ticking. Starting a running or finished driver does nothing."""
        if self.state.running or self.state.expired:
            return
        self.state.running = True
        self._task = asyncio.create_task(self._run())

    def stop(self) -> None:
        """Cancel future ticks.

        An expiry that is already underway is allowed to finish.
        """
        self.state.running = False
        if self._task is None:
            return
        if not self.state.expired and not self._task.done():
            self._task.cancel()
        self._task = None

    async def wait(self) -> None:
        """Wait until the driver finishes or is stopped."""
        task = self._task
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            if not task.cancelled():
                raise

    async def _run(self) -> None:
        while self.state.running:
            remaining = self.tick()
            if self.on_tick is not None:
                try:
                    self.on_tick(remaining)
                except Exception as e:
                    logger.error(f"Countdown tick callback failed: {e}")
            if self.is_exhausted():
                await self._expire()
                return
            await asyncio.sleep(self.interval)

    async def _expire(self) -> None:
        self.state.running = False
        self.state.expired = True
        self.state.last_remaining = 0.0
        capsule = self._capsule
        logger.info(f"Viewing time for capsule {capsule.id} is up")

        try:
            await self.on_expire(capsule)
        except Exception as e:
            # The next sweep removes the capsule if this delete did not land
            logger.error(f"Failed to expire capsule {capsule.id}: {e}")

        if self.on_finished is not None:
            result = self.on_finished(capsule)
            if inspect.isawaitable(result):
                await result

    async def __aenter__(self) -> "CountdownDriver":
        self.start()
        return self

    async def __aexit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.stop()
