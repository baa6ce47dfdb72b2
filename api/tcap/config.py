"""Runtime configuration loaded from environment variables."""

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_DB_PATH = Path("data/capsules.db")
DEFAULT_MEDIA_DIR = Path("data/media")
DEFAULT_API_URL = "http://localhost:8000"

# Signed media URLs stay valid for an hour by default
DEFAULT_MEDIA_URL_TTL = 3600
DEFAULT_MAX_UPLOAD_BYTES = 50 * 1024 * 1024
DEFAULT_SWEEP_INTERVAL = 60.0

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass
class Settings:
    """Configuration for the capsule service."""

    db_path: Path = DEFAULT_DB_PATH
    media_dir: Path = DEFAULT_MEDIA_DIR
    signing_key: str = "dev-signing-key"
    media_url_ttl: int = DEFAULT_MEDIA_URL_TTL
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    sweep_interval: float = DEFAULT_SWEEP_INTERVAL
    api_url: str = DEFAULT_API_URL
    watch_db: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings from environment variables.

        Environment variables:
            TCAP_DB_PATH: SQLite database file
            TCAP_MEDIA_DIR: Directory for uploaded media
            TCAP_SIGNING_KEY: Secret used to sign media URLs
            TCAP_MEDIA_URL_TTL: Lifetime of signed media URLs in seconds
            TCAP_MAX_UPLOAD_BYTES: Upload size limit
            TCAP_SWEEP_INTERVAL: Seconds between background expiry sweeps
            TCAP_API_URL: Base URL used by the CLI
            TCAP_WATCH_DB: Watch the database file for external writes
        """
        return cls(
            db_path=Path(os.environ.get("TCAP_DB_PATH", str(DEFAULT_DB_PATH))),
            media_dir=Path(os.environ.get("TCAP_MEDIA_DIR", str(DEFAULT_MEDIA_DIR))),
            signing_key=os.environ.get("TCAP_SIGNING_KEY", "dev-signing-key"),
            media_url_ttl=int(
                os.environ.get("TCAP_MEDIA_URL_TTL", str(DEFAULT_MEDIA_URL_TTL))
            ),
            max_upload_bytes=int(
                os.environ.get("TCAP_MAX_UPLOAD_BYTES", str(DEFAULT_MAX_UPLOAD_BYTES))
            ),
            sweep_interval=float(
                os.environ.get("TCAP_SWEEP_INTERVAL", str(DEFAULT_SWEEP_INTERVAL))
            ),
            api_url=os.environ.get("TCAP_API_URL", DEFAULT_API_URL),
            watch_db=os.environ.get("TCAP_WATCH_DB", "1").strip().lower() in _TRUTHY,
        )


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create the global settings."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings() -> None:
    """Reset the global settings (useful for testing)."""
    global _settings
    _settings = None
