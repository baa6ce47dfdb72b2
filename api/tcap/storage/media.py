"""Local media blob store with time-limited signed access URLs."""

import asyncio
import hashlib
import hmac
import logging
import mimetypes
import time
from datetime import UTC, datetime, timedelta
from pathlib import Path
from urllib.parse import quote, urlencode
from uuid import uuid4

from tcap.config import DEFAULT_MAX_UPLOAD_BYTES, DEFAULT_MEDIA_URL_TTL
from tcap.errors import MediaUnavailable, UnsupportedType, UploadTooLarge
from tcap.storage.models import CapsuleType

logger = logging.getLogger(__name__)


def media_type_for(content_type: str | None) -> CapsuleType:
    """Map a MIME type onto the capsule type it produces."""
    major = (content_type or "").strip().lower().split("/", 1)[0]
    if major == "image":
        return CapsuleType.IMAGE
    if major == "video":
        return CapsuleType.VIDEO
    raise UnsupportedType("Please upload an image or video file")


class MediaStore:
    """Path-addressed blob store rooted at a local directory."""

    def __init__(
        self,
        root: Path,
        signing_key: str,
        *,
        max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
        url_prefix: str = "/media",
    ):
        self.root = Path(root)
        self.max_upload_bytes = max_upload_bytes
        self.url_prefix = url_prefix.rstrip("/")
        self._key = signing_key.encode()

    def ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def validate(self, size: int, content_type: str | None) -> CapsuleType:
        """Check an upload before anything is written.

        Returns:
            The capsule type implied by the content type.
        """
        media_type = media_type_for(content_type)
        if size <= 0:
            raise ValueError("Empty files cannot be uploaded")
        self.check_size(size)
        return media_type

    def check_size(self, size: int) -> None:
        """Raise ``UploadTooLarge`` if ``size`` exceeds the upload limit."""
        if size > self.max_upload_bytes:
            limit_mb = self.max_upload_bytes // (1024 * 1024)
            raise UploadTooLarge(f"File size must be less than {limit_mb}MB")

    def _extension(self, filename: str | None, content_type: str) -> str:
        suffix = Path(filename or "").suffix.lower()
        if suffix and suffix[1:].isalnum():
            return suffix
        return mimetypes.guess_extension(content_type) or ".bin"

    async def put(
        self, data: bytes, content_type: str, filename: str | None = None
    ) -> str:
        """Store a blob and return its path relative to the store root."""
        media_type = self.validate(len(data), content_type)
        ext = self._extension(filename, content_type)
        path = f"{int(time.time() * 1000)}-{uuid4().hex[:8]}{ext}"
        target = self.root / path

        def _write() -> None:
            self.ensure_root()
            target.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise MediaUnavailable(f"Failed to store media: {e}") from e

        checksum = hashlib.sha256(data).hexdigest()[:16]
        logger.info(f"Stored {media_type.value} {path} ({len(data)} bytes, {checksum})")
        return path

    async def delete(self, path: str) -> bool:
        """Delete a blob. A blob that is already gone is not an error."""
        target = self.resolve(path)

        def _unlink() -> bool:
            try:
                target.unlink()
                return True
            except FileNotFoundError:
                return False

        try:
            removed = await asyncio.to_thread(_unlink)
        except OSError as e:
            raise MediaUnavailable(f"Failed to delete media {path}: {e}") from e
        if removed:
            logger.info(f"Deleted media {path}")
        return removed

    def resolve(self, path: str) -> Path:
        """Resolve a stored path to a file inside the root."""
        root = self.root.resolve()
        target = (root / path).resolve()
        if target == root or root not in target.parents:
            raise MediaUnavailable(f"Invalid media path: {path}")
        return target

    def exists(self, path: str) -> bool:
        try:
            return self.resolve(path).is_file()
        except MediaUnavailable:
            return False

    # ============== Signed access ==============

    def _signature(self, path: str, expires: int) -> str:
        message = f"{path}:{expires}".encode()
        return hmac.new(self._key, message, hashlib.sha256).hexdigest()

    def get_access_url(
        self,
        path: str,
        ttl: int = DEFAULT_MEDIA_URL_TTL,
        now: datetime | None = None,
    ) -> str:
        """Return a URL granting access to ``path`` for ``ttl`` seconds."""
        issued = now or datetime.now(UTC)
        expires = int((issued + timedelta(seconds=ttl)).timestamp())
        query = urlencode({"expires": expires, "signature": self._signature(path, expires)})
        return f"{self.url_prefix}/{quote(path)}?{query}"

    def verify(
        self,
        path: str,
        expires: int,
        signature: str,
        now: datetime | None = None,
    ) -> bool:
        """Check a signed URL's signature and expiry."""
        current = now or datetime.now(UTC)
        if current.timestamp() > expires:
            return False
        return hmac.compare_digest(self._signature(path, expires), signature)


# Global media store instance
_media_store: MediaStore | None = None


def get_media_store() -> MediaStore:
    """Get or create the global media store."""
    global _media_store
    if _media_store is None:
        from tcap.config import get_settings

        settings = get_settings()
        _media_store = MediaStore(
            settings.media_dir,
            settings.signing_key,
            max_upload_bytes=settings.max_upload_bytes,
        )
    return _media_store


def reset_media_store() -> None:
    """Reset the global media store (useful for testing)."""
    global _media_store
    _media_store = None
