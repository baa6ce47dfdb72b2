"""Storage layer - capsule records and media blobs."""

from tcap.storage.database import (
    Database,
    get_database,
    init_database,
    reset_database,
)
from tcap.storage.media import (
    MediaStore,
    get_media_store,
    media_type_for,
    reset_media_store,
)
from tcap.storage.models import (
    DEFAULT_LIFETIME,
    DEFAULT_VIEW_DURATION,
    MIN_VIEW_DURATION,
    Capsule,
    CapsuleType,
)

__all__ = [
    # Database
    "Database",
    "get_database",
    "init_database",
    "reset_database",
    # Media
    "MediaStore",
    "get_media_store",
    "media_type_for",
    "reset_media_store",
    # Models
    "DEFAULT_LIFETIME",
    "DEFAULT_VIEW_DURATION",
    "MIN_VIEW_DURATION",
    "Capsule",
    "CapsuleType",
]
