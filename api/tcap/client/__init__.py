"""HTTP client for the capsule API."""

from tcap.client.api import (
    ApiCapsuleSource,
    CapsuleClient,
    capsule_from_payload,
)
from tcap.client.session import ViewSession

__all__ = [
    "ApiCapsuleSource",
    "CapsuleClient",
    "ViewSession",
    "capsule_from_payload",
]
