"""Tests for the countdown driver."""

import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from tcap.errors import StoreUnavailable
from tcap.lifecycle import CountdownDriver

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def viewed(make_capsule):
    """A capsule opened at T0 with a 5 second budget."""
    return make_capsule(is_opened=True, first_opened_at=T0, view_duration=5)


async def run_until_done(driver: CountdownDriver) -> None:
    await asyncio.wait_for(driver.wait(), timeout=2.0)


class TestTick:
    """Tests for recomputing the remaining time."""

    def test_initial_state(self, viewed, clock):
        clock.advance(1)
        driver = CountdownDriver(viewed, AsyncMock(), clock=clock)

        assert driver.state.running is False
        assert driver.state.last_remaining == pytest.approx(4.0)

    def test_tick_recomputes_from_anchor(self, viewed, clock):
        """Test ticks read the clock instead of counting down."""
        driver = CountdownDriver(viewed, AsyncMock(), clock=clock)

        clock.advance(3)
        assert driver.tick() == pytest.approx(2.0)

        # A jump back in time is reflected as-is
        clock.set(T0)
        assert driver.tick() == pytest.approx(5.0)

    def test_update_replaces_snapshot(self, viewed, make_capsule, clock):
        driver = CountdownDriver(viewed, AsyncMock(), clock=clock)
        newer = make_capsule(is_opened=True, first_opened_at=T0, view_duration=60)

        driver.update(newer)

        assert driver.capsule is newer
        assert driver.tick() == pytest.approx(60.0)

    def test_is_exhausted(self, viewed, clock):
        driver = CountdownDriver(viewed, AsyncMock(), clock=clock)
        assert not driver.is_exhausted()

        clock.advance(5)
        assert driver.is_exhausted()


class TestRun:
    """Tests for the running driver."""

    async def test_expires_once_when_time_runs_out(self, viewed, clock):
        on_expire = AsyncMock()
        on_finished = MagicMock()
        driver = CountdownDriver(
            viewed, on_expire, clock=clock, interval=0.01, on_finished=on_finished
        )

        driver.start()
        await asyncio.sleep(0.03)
        on_expire.assert_not_awaited()

        clock.advance(6)
        await run_until_done(driver)

        on_expire.assert_awaited_once_with(viewed)
        on_finished.assert_called_once_with(viewed)
        assert driver.state.expired is True
        assert driver.state.running is False
        assert driver.state.last_remaining == 0.0

    async def test_already_exhausted_expires_immediately(self, viewed, clock):
        clock.advance(60)
        on_expire = AsyncMock()
        driver = CountdownDriver(viewed, on_expire, clock=clock, interval=0.01)

        driver.start()
        await run_until_done(driver)

        on_expire.assert_awaited_once()

    async def test_starting_twice_expires_once(self, viewed, clock):
        on_expire = AsyncMock()
        driver = CountdownDriver(viewed, on_expire, clock=clock, interval=0.01)

        driver.start()
        driver.start()
        clock.advance(6)
        await run_until_done(driver)
        driver.start()
        await asyncio.sleep(0.03)

        on_expire.assert_awaited_once()

    async def test_stop_cancels_ticks(self, viewed, clock):
        on_expire = AsyncMock()
        ticks: list[float] = []
        driver = CountdownDriver(
            viewed, on_expire, clock=clock, interval=0.01, on_tick=ticks.append
        )

        driver.start()
        await asyncio.sleep(0.03)
        driver.stop()
        seen = len(ticks)
        clock.advance(6)
        await asyncio.sleep(0.05)

        on_expire.assert_not_awaited()
        assert driver.state.running is False
        assert len(ticks) == seen
        assert seen > 0

    async def test_expire_failure_still_finishes(self, viewed, clock):
        """Test a failed delete is logged and the view still moves on."""
        on_expire = AsyncMock(side_effect=StoreUnavailable("offline"))
        on_finished = AsyncMock()
        driver = CountdownDriver(
            viewed, on_expire, clock=clock, interval=0.01, on_finished=on_finished
        )

        clock.advance(10)
        driver.start()
        await run_until_done(driver)

        on_finished.assert_awaited_once_with(viewed)
        assert driver.state.expired is True

    async def test_tick_callback_errors_keep_counting(self, viewed, clock):
        """Test a failing display callback does not stall the countdown."""
        on_expire = AsyncMock()
        on_tick = MagicMock(side_effect=RuntimeError("display gone"))
        driver = CountdownDriver(
            viewed, on_expire, clock=clock, interval=0.01, on_tick=on_tick
        )

        driver.start()
        await asyncio.sleep(0.03)
        clock.advance(6)
        await run_until_done(driver)

        assert on_tick.call_count >= 2
        on_expire.assert_awaited_once_with(viewed)
        assert driver.state.running is False

    async def test_context_manager_stops(self, viewed, clock):
        on_expire = AsyncMock()
        async with CountdownDriver(viewed, on_expire, clock=clock, interval=0.01) as driver:
            assert driver.state.running is True

        assert driver.state.running is False
        on_expire.assert_not_awaited()

