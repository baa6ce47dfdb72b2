"""Async SQLite capsule record store."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any
from uuid import UUID

import aiosqlite

from tcap.errors import StoreUnavailable
from tcap.storage.models import Capsule, CapsuleType

if TYPE_CHECKING:
    from tcap.lifecycle.notifications import ChangeHub

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Capsules: the only entity
CREATE TABLE IF NOT EXISTS capsules (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    type TEXT NOT NULL CHECK (type IN ('text', 'image', 'video')),
    content TEXT NOT NULL DEFAULT '',
    media_path TEXT,
    created_at TEXT NOT NULL,
    available_at TEXT NOT NULL,
    expires_at TEXT NOT NULL CHECK (expires_at > created_at),
    view_duration REAL NOT NULL CHECK (view_duration >= 5),
    is_opened INTEGER NOT NULL DEFAULT 0,  -- Boolean as integer
    first_opened_at TEXT,                  -- Anchor, written once
    remaining_duration REAL                -- Hint, may lag a live countdown
);

CREATE INDEX IF NOT EXISTS idx_capsules_created_at ON capsules(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_capsules_expires_at ON capsules(expires_at);
CREATE INDEX IF NOT EXISTS idx_capsules_available_at ON capsules(available_at);
"""

# Columns a partial update may touch; id, type and created_at are immutable
UPDATABLE_COLUMNS = {
    "name",
    "content",
    "media_path",
    "available_at",
    "expires_at",
    "view_duration",
    "is_opened",
    "first_opened_at",
    "remaining_duration",
}


def _ts(value: datetime) -> str:
    """Serialize a timestamp so that string order matches time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _to_column(key: str, value: Any) -> Any:
    if isinstance(value, datetime):
        return _ts(value)
    if isinstance(value, bool):
        return 1 if value else 0
    if key == "type" and isinstance(value, CapsuleType):
        return value.value
    return value


class Database:
    """Async SQLite connection manager and capsule table accessor."""

    def __init__(self, db_path: Path, hub: ChangeHub | None = None):
        self.db_path = db_path
        self.hub = hub

    async def initialize(self) -> None:
        """Initialize the database and apply schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        async with self.connect() as db:
            await db.executescript(SCHEMA_SQL)
            await db.execute(
                """
                INSERT OR REPLACE INTO schema_version (version, applied_at)
                VALUES (?, ?)
                """,
                (SCHEMA_VERSION, datetime.now(UTC).isoformat()),
            )
            await db.commit()

    @asynccontextmanager
    async def connect(self) -> AsyncGenerator[aiosqlite.Connection, None]:
        """Get a database connection.

        Operational failures (locked or unreadable database, missing
        directory) surface as ``StoreUnavailable``.
        """
        try:
            db = await aiosqlite.connect(self.db_path)
        except (aiosqlite.OperationalError, OSError) as e:
            raise StoreUnavailable(f"Cannot open database {self.db_path}: {e}") from e
        db.row_factory = aiosqlite.Row
        try:
            yield db
        except aiosqlite.OperationalError as e:
            raise StoreUnavailable(f"Database operation failed: {e}") from e
        finally:
            await db.close()

    def _notify(self, reason: str) -> None:
        if self.hub is not None:
            self.hub.publish(reason)

    # ============== Capsule CRUD ==============

    async def insert(self, capsule: Capsule) -> Capsule:
        """Insert a new capsule."""
        async with self.connect() as db:
            await db.execute(
                """
                INSERT INTO capsules (id, name, type, content, media_path, created_at,
                                      available_at, expires_at, view_duration, is_opened,
                                      first_opened_at, remaining_duration)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(capsule.id),
                    capsule.name,
                    capsule.type.value,
                    capsule.content,
                    capsule.media_path,
                    _ts(capsule.created_at),
                    _ts(capsule.available_at),
                    _ts(capsule.expires_at),
                    capsule.view_duration,
                    1 if capsule.is_opened else 0,
                    _ts(capsule.first_opened_at) if capsule.first_opened_at else None,
                    capsule.remaining_duration,
                ),
            )
            await db.commit()
        self._notify("insert")
        return capsule

    async def get(self, capsule_id: UUID) -> Capsule | None:
        """Get a capsule by ID."""
        async with self.connect() as db:
            cursor = await db.execute(
                "SELECT * FROM capsules WHERE id = ?", (str(capsule_id),)
            )
            row = await cursor.fetchone()
            return self._row_to_capsule(row) if row else None

    async def update(self, capsule_id: UUID, **fields: Any) -> bool:
        """Apply a partial update. Returns False if the capsule is gone."""
        unknown = set(fields) - UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update columns: {', '.join(sorted(unknown))}")
        if not fields:
            return False

        assignments = ", ".join(f"{key} = ?" for key in fields)
        params = [_to_column(key, value) for key, value in fields.items()]
        params.append(str(capsule_id))

        async with self.connect() as db:
            cursor = await db.execute(
                f"UPDATE capsules SET {assignments} WHERE id = ?", params
            )
            await db.commit()
            changed = cursor.rowcount > 0
        if changed:
            self._notify("update")
        return changed

    async def mark_opened(
        self, capsule_id: UUID, opened_at: datetime, remaining: float
    ) -> bool:
        """Set the first-open anchor unless one is already stored.

        The row update is the atomicity unit: of several concurrent callers
        exactly one sees True, the others leave the stored anchor untouched.
        """
        async with self.connect() as db:
            cursor = await db.execute(
                """
                UPDATE capsules SET is_opened = 1, first_opened_at = ?, remaining_duration = ?
                WHERE id = ? AND first_opened_at IS NULL
                """,
                (_ts(opened_at), remaining, str(capsule_id)),
            )
            await db.commit()
            changed = cursor.rowcount > 0
        if changed:
            self._notify("update")
        return changed

    async def delete(self, capsule_id: UUID) -> bool:
        """Delete a capsule. Deleting an absent capsule returns False."""
        async with self.connect() as db:
            cursor = await db.execute(
                "DELETE FROM capsules WHERE id = ?", (str(capsule_id),)
            )
            await db.commit()
            deleted = cursor.rowcount > 0
        if deleted:
            self._notify("delete")
        return deleted

    async def list_where(self, now: datetime, limit: int = 500) -> list[Capsule]:
        """List capsules that may still be viewed, newest first.

        Matches rows where ``(NOT is_opened) OR (is_opened AND
        remaining_duration > 0)`` and ``expires_at > now``. The remaining
        duration is only a hint, so callers still classify each result.
        """
        async with self.connect() as db:
            cursor = await db.execute(
                """
                SELECT * FROM capsules
                WHERE (is_opened = 0 OR (is_opened = 1 AND remaining_duration > 0))
                  AND expires_at > ?
                ORDER BY created_at DESC
                LIMIT ?
                """,
                (_ts(now), limit),
            )
            rows = await cursor.fetchall()
            return [self._row_to_capsule(row) for row in rows]

    async def list_all(self) -> list[Capsule]:
        """List every stored capsule, newest first."""
        async with self.connect() as db:
            cursor = await db.execute("SELECT * FROM capsules ORDER BY created_at DESC")
            rows = await cursor.fetchall()
            return [self._row_to_capsule(row) for row in rows]

    # ============== Helpers ==============

    def _row_to_capsule(self, row: aiosqlite.Row) -> Capsule:
        """Convert a database row to a Capsule."""
        return Capsule(
            id=UUID(row["id"]),
            name=row["name"],
            type=CapsuleType(row["type"]),
            content=row["content"],
            media_path=row["media_path"],
            created_at=datetime.fromisoformat(row["created_at"]),
            available_at=datetime.fromisoformat(row["available_at"]),
            expires_at=datetime.fromisoformat(row["expires_at"]),
            view_duration=row["view_duration"],
            is_opened=bool(row["is_opened"]),
            first_opened_at=(
                datetime.fromisoformat(row["first_opened_at"])
                if row["first_opened_at"]
                else None
            ),
            remaining_duration=row["remaining_duration"],
        )


# Global database instance
_database: Database | None = None


def get_database(db_path: Path | None = None) -> Database:
    """Get or create the global database instance."""
    global _database
    if _database is None:
        from tcap.config import get_settings
        from tcap.lifecycle.notifications import get_change_hub

        _database = Database(db_path or get_settings().db_path, hub=get_change_hub())
    return _database


async def init_database(db_path: Path | None = None) -> Database:
    """Initialize and return the database."""
    db = get_database(db_path)
    await db.initialize()
    logger.info(f"Capsule database ready at {db.db_path}")
    return db


def reset_database() -> None:
    """Reset the global database (useful for testing)."""
    global _database
    _database = None
