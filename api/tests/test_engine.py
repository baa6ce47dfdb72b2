"""Tests for the lifecycle state machine and engine."""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest

from tcap.errors import MediaUnavailable
from tcap.lifecycle import (
    FrozenClock,
    LifecycleEngine,
    LifecycleState,
    ListingBucket,
    LoadStatus,
    OpenStatus,
    bucket,
    classify,
    remaining_time,
    time_until_available,
)
from tcap.storage import CapsuleType

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


def opened_at(make_capsule, when, **overrides):
    return make_capsule(is_opened=True, first_opened_at=when, **overrides)


class TestRemainingTime:
    """Tests for remaining viewing time accounting."""

    def test_unopened_has_full_budget(self, make_capsule):
        capsule = make_capsule(view_duration=30)
        assert remaining_time(capsule, T0 + timedelta(hours=5)) == 30.0

    def test_counts_down_from_anchor(self, make_capsule):
        capsule = opened_at(make_capsule, T0, view_duration=20)
        assert remaining_time(capsule, T0 + timedelta(seconds=8)) == pytest.approx(12.0)

    def test_never_negative(self, make_capsule):
        """Test remaining time clamps at zero far past the anchor."""
        capsule = opened_at(make_capsule, T0, view_duration=10)
        assert remaining_time(capsule, T0 + timedelta(days=365)) == 0.0

    def test_clock_before_anchor_keeps_full_budget(self, make_capsule):
        """Test a clock behind the anchor never adds time."""
        capsule = opened_at(make_capsule, T0, view_duration=10)
        assert remaining_time(capsule, T0 - timedelta(days=365)) == 10.0

    def test_depends_only_on_anchor(self, make_capsule):
        """Test that polling in between does not change the result."""
        capsule = opened_at(make_capsule, T0, view_duration=60)
        for step in range(0, 30, 3):
            remaining_time(capsule, T0 + timedelta(seconds=step))
        assert remaining_time(capsule, T0 + timedelta(seconds=30)) == pytest.approx(30.0)

    def test_time_until_available(self, make_capsule):
        capsule = make_capsule(available_at=T0 + timedelta(minutes=5))
        assert time_until_available(capsule, T0) == 300.0
        assert time_until_available(capsule, T0 + timedelta(minutes=10)) == 0.0


class TestClassify:
    """Tests for lifecycle classification."""

    def test_scheduled_capsule_unlocks(self, make_capsule):
        """Scenario: locked for an hour, unlocked a second after."""
        capsule = make_capsule(available_at=T0 + timedelta(hours=1))

        assert classify(capsule, T0) is LifecycleState.LOCKED
        assert (
            classify(capsule, T0 + timedelta(hours=1, seconds=1))
            is LifecycleState.UNLOCKED
        )

    def test_viewing_window_runs_out(self, make_capsule):
        """Scenario: 10s budget opened at t0."""
        capsule = opened_at(make_capsule, T0, view_duration=10)

        halfway = T0 + timedelta(seconds=5)
        assert remaining_time(capsule, halfway) == pytest.approx(5.0)
        assert classify(capsule, halfway) is LifecycleState.OPENED

        after = T0 + timedelta(seconds=11)
        assert remaining_time(capsule, after) == 0.0
        assert classify(capsule, after) is LifecycleState.EXPIRED

    def test_unopened_capsule_hits_ceiling(self, make_capsule):
        """Scenario: never opened, expired a second past 24h."""
        capsule = make_capsule(
            available_at=T0 + timedelta(hours=23), view_duration=3600
        )
        assert capsule.expires_at == T0 + timedelta(hours=24)
        assert (
            classify(capsule, T0 + timedelta(hours=24, seconds=1))
            is LifecycleState.EXPIRED
        )

    def test_exhausted_budget_expires_before_ceiling(self, make_capsule):
        """Test the two expiry triggers are independent."""
        capsule = opened_at(make_capsule, T0, view_duration=5)
        now = T0 + timedelta(seconds=6)
        assert now < capsule.expires_at
        assert classify(capsule, now) is LifecycleState.EXPIRED

    def test_ceiling_expires_an_open_capsule(self, make_capsule):
        capsule = opened_at(
            make_capsule, T0 + timedelta(hours=23, minutes=59), view_duration=3600
        )
        assert classify(capsule, T0 + timedelta(hours=24, seconds=1)) is LifecycleState.EXPIRED

    def test_expired_is_terminal(self, make_capsule):
        """Test that no later time resurrects an expired capsule."""
        capsule = opened_at(make_capsule, T0, view_duration=5)
        first_expired = T0 + timedelta(seconds=5)
        assert classify(capsule, first_expired) is LifecycleState.EXPIRED
        for offset in (1, 60, 3600, 86400, 86400 * 30):
            later = first_expired + timedelta(seconds=offset)
            assert classify(capsule, later) is LifecycleState.EXPIRED


class TestBucket:
    """Tests for listing buckets."""

    def test_unopened_is_upcoming(self, make_capsule):
        assert bucket(make_capsule(), T0) is ListingBucket.UPCOMING

    def test_locked_is_upcoming(self, make_capsule):
        capsule = make_capsule(available_at=T0 + timedelta(hours=2))
        assert bucket(capsule, T0) is ListingBucket.UPCOMING

    def test_opened_is_expiring(self, make_capsule):
        capsule = opened_at(make_capsule, T0)
        assert bucket(capsule, T0 + timedelta(seconds=1)) is ListingBucket.EXPIRING

    def test_expired_has_no_bucket(self, make_capsule):
        capsule = opened_at(make_capsule, T0, view_duration=5)
        assert bucket(capsule, T0 + timedelta(seconds=10)) is None


class TestEngineLoad:
    """Tests for LifecycleEngine.load."""

    async def test_load_unlocked(self, engine, db, make_capsule):
        capsule = await db.insert(make_capsule())

        result = await engine.load(capsule.id)

        assert result.status is LoadStatus.READY
        assert result.state is LifecycleState.UNLOCKED
        assert result.remaining == 15.0

    async def test_load_locked(self, engine, db, make_capsule):
        capsule = await db.insert(make_capsule(available_at=T0 + timedelta(hours=1)))

        result = await engine.load(capsule.id)

        assert result.status is LoadStatus.NOT_YET_AVAILABLE
        assert result.available_in == 3600.0

    async def test_load_expired_cleans_up(self, engine, db, make_capsule):
        capsule = await db.insert(make_capsule(created_at=T0 - timedelta(hours=25)))

        result = await engine.load(capsule.id)

        assert result.status is LoadStatus.ALREADY_EXPIRED
        assert await db.get(capsule.id) is None

    async def test_load_missing(self, engine):
        result = await engine.load(uuid4())
        assert result.status is LoadStatus.NOT_FOUND


class TestEngineOpen:
    """Tests for LifecycleEngine.open."""

    async def test_first_open_writes_anchor(self, engine, db, make_capsule):
        capsule = await db.insert(make_capsule(view_duration=10))

        result = await engine.open(capsule.id)

        assert result.status is OpenStatus.OPENED
        assert result.ok
        assert result.remaining == 10.0
        stored = await db.get(capsule.id)
        assert stored.is_opened is True
        assert stored.first_opened_at == T0

    async def test_second_open_resumes(self, engine, db, make_capsule, clock):
        """Test opening twice keeps the first anchor."""
        capsule = await db.insert(make_capsule(view_duration=10))
        await engine.open(capsule.id)

        clock.advance(4)
        result = await engine.open(capsule.id)

        assert result.status is OpenStatus.RESUMED
        assert result.remaining == pytest.approx(6.0)
        stored = await db.get(capsule.id)
        assert stored.first_opened_at == T0

    async def test_open_locked(self, engine, db, make_capsule):
        capsule = await db.insert(make_capsule(available_at=T0 + timedelta(minutes=2)))

        result = await engine.open(capsule.id)

        assert result.status is OpenStatus.NOT_YET_AVAILABLE
        assert not result.ok
        assert result.available_in == 120.0
        stored = await db.get(capsule.id)
        assert stored.first_opened_at is None

    async def test_open_expired(self, engine, db, make_capsule, clock):
        capsule = await db.insert(make_capsule(view_duration=5))
        await engine.open(capsule.id)

        clock.advance(6)
        result = await engine.open(capsule.id)

        assert result.status is OpenStatus.ALREADY_EXPIRED
        assert await db.get(capsule.id) is None

    async def test_open_missing(self, engine):
        result = await engine.open(uuid4())
        assert result.status is OpenStatus.NOT_FOUND

    async def test_concurrent_opens_keep_one_anchor(self, db, media, make_capsule):
        """Scenario: two clients open within 10ms of each other."""
        capsule = await db.insert(make_capsule())
        t1 = T0 + timedelta(seconds=0.01)
        first = LifecycleEngine(db, media, FrozenClock(T0))
        second = LifecycleEngine(db, media, FrozenClock(t1))

        results = await asyncio.gather(first.open(capsule.id), second.open(capsule.id))

        assert sorted(r.status.value for r in results) == ["opened", "resumed"]
        stored = await db.get(capsule.id)
        assert stored.first_opened_at in (T0, t1)

        anchor = stored.first_opened_at
        refresher = LifecycleEngine(db, media, FrozenClock(T0 + timedelta(seconds=3)))
        await refresher.load(capsule.id)
        await refresher.open(capsule.id)
        assert (await db.get(capsule.id)).first_opened_at == anchor

    async def test_lost_race_reports_resumed(self, engine, db, make_capsule):
        """Test a failed conditional write re-reads the winner's anchor."""
        capsule = await db.insert(make_capsule())
        winner = T0 - timedelta(seconds=1)
        await db.mark_opened(capsule.id, winner, capsule.view_duration)

        with patch.object(db, "get", AsyncMock(side_effect=[capsule, await db.get(capsule.id)])):
            result = await engine.open(capsule.id)

        assert result.status is OpenStatus.RESUMED
        assert result.capsule.first_opened_at == winner


class TestExpireAndDelete:
    """Tests for LifecycleEngine.expire_and_delete."""

    async def _media_capsule(self, db, media, make_capsule):
        path = await media.put(b"\x89PNG fake", "image/png", "pic.png")
        return await db.insert(
            make_capsule(type=CapsuleType.IMAGE, content="pic.png", media_path=path)
        )

    async def test_deletes_media_and_record(self, engine, db, media, make_capsule):
        capsule = await self._media_capsule(db, media, make_capsule)

        result = await engine.expire_and_delete(capsule)

        assert result.media_deleted is True
        assert result.record_deleted is True
        assert not media.exists(capsule.media_path)
        assert await db.get(capsule.id) is None

    async def test_second_call_is_a_no_op(self, engine, db, media, make_capsule):
        capsule = await self._media_capsule(db, media, make_capsule)
        await engine.expire_and_delete(capsule)

        result = await engine.expire_and_delete(capsule)

        assert result.media_deleted is False
        assert result.record_deleted is False

    async def test_media_already_gone(self, engine, db, media, make_capsule):
        """Scenario: a previous call already removed the blob."""
        capsule = await self._media_capsule(db, media, make_capsule)
        await media.delete(capsule.media_path)

        await engine.expire_and_delete(capsule)

        assert await db.get(capsule.id) is None

    async def test_media_failure_keeps_record(self, engine, db, media, make_capsule):
        capsule = await self._media_capsule(db, media, make_capsule)

        with patch.object(media, "delete", AsyncMock(side_effect=MediaUnavailable("disk"))):
            with pytest.raises(MediaUnavailable):
                await engine.expire_and_delete(capsule)

        assert await db.get(capsule.id) is not None


class TestSweep:
    """Tests for LifecycleEngine.sweep."""

    async def test_sweep_removes_only_expired(self, engine, db, make_capsule, clock):
        viewed = await db.insert(make_capsule(view_duration=5))
        fresh = await db.insert(make_capsule())
        await engine.open(viewed.id)
        clock.advance(10)

        removed = await engine.sweep()

        assert removed == [viewed.id]
        assert await db.get(viewed.id) is None
        assert await db.get(fresh.id) is not None

    async def test_sweep_skips_media_failures(self, engine, db, media, make_capsule):
        path = await media.put(b"GIF89a", "image/gif", "a.gif")
        capsule = await db.insert(
            make_capsule(
                created_at=T0 - timedelta(hours=30),
                type=CapsuleType.IMAGE,
                media_path=path,
            )
        )

        with patch.object(media, "delete", AsyncMock(side_effect=MediaUnavailable("disk"))):
            removed = await engine.sweep()

        assert removed == []
        assert await db.get(capsule.id) is not None

    async def test_sweep_with_nothing_expired(self, engine, db, make_capsule):
        await db.insert(make_capsule())
        assert await engine.sweep() == []
