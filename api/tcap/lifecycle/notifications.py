"""Change notifications for the capsule table.

Consumers only learn that *something* changed and re-poll; signals carry no
payload guarantees. ``ChangeHub`` is the in-process channel the store
publishes to. ``DatabaseWatcher`` feeds it writes made by other processes by
watching the SQLite file.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

logger = logging.getLogger(__name__)

# Event types that mean the database file content may have changed
_WRITE_EVENTS = {"created", "modified", "deleted", "moved"}


@dataclass(frozen=True)
class ChangeSignal:
    """A "something changed" wake-up."""

    revision: int
    reason: str = "change"


class ChangeHub:
    """Revision counter that wakes waiters whenever it is bumped."""

    def __init__(self) -> None:
        self._revision = 0
        self._reason = "change"
        self._event: asyncio.Event | None = None

    @property
    def revision(self) -> int:
        return self._revision

    def publish(self, reason: str = "change") -> int:
        """Record a change and wake every waiter."""
        self._revision += 1
        self._reason = reason
        if self._event is not None:
            self._event.set()
            self._event = None
        return self._revision

    def publish_threadsafe(self, loop: asyncio.AbstractEventLoop, reason: str) -> None:
        """Publish from a thread that does not own the event loop."""
        if loop.is_closed():
            return
        loop.call_soon_threadsafe(self.publish, reason)

    async def wait_for_change(self, since: int, timeout: float | None = None) -> int:
        """Wait until the revision moves past ``since``.

        Returns:
            The current revision, which equals ``since`` on timeout.
        """
        while self._revision <= since:
            if self._event is None:
                self._event = asyncio.Event()
            try:
                await asyncio.wait_for(self._event.wait(), timeout)
            except TimeoutError:
                break
        return self._revision

    async def subscribe(self, since: int | None = None) -> AsyncIterator[ChangeSignal]:
        """Yield a signal for every batch of changes after ``since``.

        Several publishes between two reads collapse into one signal.
        Cancel the consuming task (or ``aclose`` the iterator) to unsubscribe.
        """
        revision = self._revision if since is None else since
        while True:
            revision = await self.wait_for_change(revision)
            yield ChangeSignal(revision=revision, reason=self._reason)


class _DatabaseFileHandler(FileSystemEventHandler):
    """Forward writes to the database file into a hub."""

    def __init__(self, db_path: Path, hub: ChangeHub, loop: asyncio.AbstractEventLoop):
        super().__init__()
        name = db_path.name
        self._names = {name, f"{name}-wal", f"{name}-journal"}
        self.hub = hub
        self.loop = loop

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in _WRITE_EVENTS:
            return
        src_path = event.src_path
        if isinstance(src_path, bytes):
            src_path = src_path.decode("utf-8")
        if Path(src_path).name not in self._names:
            return
        self.hub.publish_threadsafe(self.loop, "external")


class DatabaseWatcher:
    """Watch the SQLite file so other processes' writes wake local pollers."""

    def __init__(
        self,
        db_path: Path | str,
        hub: ChangeHub,
        loop: asyncio.AbstractEventLoop | None = None,
    ):
        """Initialize the watcher.

        Args:
            db_path: Database file to watch.
            hub: Hub that receives an "external" signal per write.
            loop: Event loop owning the hub. Defaults to the running loop.
        """
        self.db_path = Path(db_path)
        self.hub = hub
        self._loop = loop
        self._observer: BaseObserver | None = None

    def start(self) -> None:
        """Start watching the database directory."""
        if self._observer is not None:
            return

        watch_dir = self.db_path.parent
        if not watch_dir.is_dir():
            raise ValueError(f"Database directory does not exist: {watch_dir}")

        loop = self._loop or asyncio.get_running_loop()
        handler = _DatabaseFileHandler(self.db_path, self.hub, loop)
        self._observer = Observer()
        self._observer.schedule(handler, str(watch_dir), recursive=False)
        self._observer.start()
        logger.info(f"Watching {self.db_path} for external changes")

    def stop(self) -> None:
        """Stop watching."""
        if self._observer is None:
            return

        self._observer.stop()
        self._observer.join(timeout=5)
        self._observer = None
        logger.info("Stopped database watcher")

    def is_running(self) -> bool:
        """Check if the watcher is running."""
        return self._observer is not None and self._observer.is_alive()


# Global hub instance
_hub: ChangeHub | None = None


def get_change_hub() -> ChangeHub:
    """Get or create the global change hub."""
    global _hub
    if _hub is None:
        _hub = ChangeHub()
    return _hub


def reset_change_hub() -> None:
    """Reset the global change hub (useful for testing)."""
    global _hub
    _hub = None
