"""Error taxonomy for capsule operations.

The lifecycle engine reports domain conditions through result types; these
exceptions are used at the edges (creation, storage, media, client).
"""


class CapsuleError(Exception):
    """Base class for capsule errors."""

    code = "capsule_error"


class NotYetAvailable(CapsuleError):
    """A capsule was opened while still locked."""

    code = "not_yet_available"

    def __init__(self, available_in: float):
        super().__init__(f"Capsule will be available in {available_in:.0f}s")
        self.available_in = available_in


class AlreadyExpired(CapsuleError):
    """A capsule reached its terminal state and has been removed."""

    code = "already_expired"


class MediaUnavailable(CapsuleError):
    """A media blob could not be stored, found or served."""

    code = "media_unavailable"


class StoreUnavailable(CapsuleError):
    """Transient failure talking to the capsule record store."""

    code = "store_unavailable"


class UploadTooLarge(CapsuleError, ValueError):
    """Uploaded media exceeds the configured size limit."""

    code = "upload_too_large"


class UnsupportedType(CapsuleError, ValueError):
    """Uploaded media is neither an image nor a video."""

    code = "unsupported_type"


class CapsuleNotFound(CapsuleError, LookupError):
    """No capsule exists with the requested ID."""

    code = "not_found"
