"""Capsule lifecycle - state machine, countdown and availability polling."""

from tcap.lifecycle.clock import Clock, FrozenClock, SystemClock, get_clock
from tcap.lifecycle.countdown import (
    DETAIL_TICK_INTERVAL,
    LIST_TICK_INTERVAL,
    CountdownDriver,
    CountdownState,
)
from tcap.lifecycle.creation import (
    CapsuleDraft,
    MediaUpload,
    create_capsule,
    view_duration_from_parts,
)
from tcap.lifecycle.engine import (
    DeleteResult,
    LifecycleEngine,
    LifecycleState,
    ListingBucket,
    LoadResult,
    LoadStatus,
    OpenResult,
    OpenStatus,
    bucket,
    classify,
    get_lifecycle_engine,
    remaining_time,
    reset_lifecycle_engine,
    time_until_available,
)
from tcap.lifecycle.notifications import (
    ChangeHub,
    ChangeSignal,
    DatabaseWatcher,
    get_change_hub,
    reset_change_hub,
)
from tcap.lifecycle.poller import (
    AvailabilityPoller,
    CapsuleSource,
    Listing,
    LocalCapsuleSource,
)

__all__ = [
    # Clock
    "Clock",
    "FrozenClock",
    "SystemClock",
    "get_clock",
    # Engine
    "DeleteResult",
    "LifecycleEngine",
    "LifecycleState",
    "ListingBucket",
    "LoadResult",
    "LoadStatus",
    "OpenResult",
    "OpenStatus",
    "bucket",
    "classify",
    "get_lifecycle_engine",
    "remaining_time",
    "reset_lifecycle_engine",
    "time_until_available",
    # Creation
    "CapsuleDraft",
    "MediaUpload",
    "create_capsule",
    "view_duration_from_parts",
    # Countdown
    "DETAIL_TICK_INTERVAL",
    "LIST_TICK_INTERVAL",
    "CountdownDriver",
    "CountdownState",
    # Poller
    "AvailabilityPoller",
    "CapsuleSource",
    "Listing",
    "LocalCapsuleSource",
    # Notifications
    "ChangeHub",
    "ChangeSignal",
    "DatabaseWatcher",
    "get_change_hub",
    "reset_change_hub",
]
