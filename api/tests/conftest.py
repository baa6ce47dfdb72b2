"""Shared fixtures for the capsule tests."""

import tempfile
from datetime import UTC, datetime
from pathlib import Path

import pytest

from tcap.config import reset_settings
from tcap.lifecycle import ChangeHub, FrozenClock, LifecycleEngine, reset_change_hub
from tcap.lifecycle.engine import reset_lifecycle_engine
from tcap.storage import Capsule, Database, MediaStore, reset_database, reset_media_store

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def reset_services():
    """Reset global services before and after each test."""
    reset_settings()
    reset_database()
    reset_media_store()
    reset_lifecycle_engine()
    reset_change_hub()
    yield
    reset_settings()
    reset_database()
    reset_media_store()
    reset_lifecycle_engine()
    reset_change_hub()


@pytest.fixture
def tmpdir_path():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(T0)


@pytest.fixture
def hub() -> ChangeHub:
    return ChangeHub()


@pytest.fixture
async def db(tmpdir_path: Path, hub: ChangeHub):
    """Create a temporary database for testing."""
    database = Database(tmpdir_path / "test.db", hub=hub)
    await database.initialize()
    yield database


@pytest.fixture
def media(tmpdir_path: Path) -> MediaStore:
    """Media store with a 1KB upload limit."""
    store = MediaStore(tmpdir_path / "media", "test-signing-key", max_upload_bytes=1024)
    store.ensure_root()
    return store


@pytest.fixture
def engine(db: Database, media: MediaStore, clock: FrozenClock) -> LifecycleEngine:
    return LifecycleEngine(db, media, clock)


@pytest.fixture
def make_capsule(clock: FrozenClock):
    """Factory for capsules created at the frozen clock's current time."""

    def _make(**overrides) -> Capsule:
        fields = {
            "content": "see you later",
            "created_at": clock.now(),
            "available_at": clock.now(),
        }
        fields.update(overrides)
        return Capsule(**fields)

    return _make
