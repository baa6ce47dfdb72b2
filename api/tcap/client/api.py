"""Async HTTP client for the capsule API."""

import logging
from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any
from uuid import UUID

import httpx

from tcap.errors import (
    AlreadyExpired,
    CapsuleError,
    CapsuleNotFound,
    NotYetAvailable,
    StoreUnavailable,
    UnsupportedType,
    UploadTooLarge,
)
from tcap.lifecycle.notifications import ChangeSignal
from tcap.storage.models import DEFAULT_VIEW_DURATION, Capsule, CapsuleType

logger = logging.getLogger(__name__)

# Server-side wait for one long-poll request
DEFAULT_CHANGE_TIMEOUT = 25.0


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def capsule_from_payload(data: dict[str, Any]) -> Capsule:
    """Build a ``Capsule`` from a ``CapsuleResponse`` payload."""
    return Capsule(
        id=UUID(str(data["id"])),
        name=data.get("name") or "",
        type=CapsuleType(data.get("type", "text")),
        content=data.get("content") or "",
        created_at=_parse_datetime(data["created_at"]),
        available_at=_parse_datetime(data["available_at"]),
        expires_at=_parse_datetime(data.get("expires_at")),
        view_duration=float(data.get("view_duration", DEFAULT_VIEW_DURATION)),
        is_opened=bool(data.get("is_opened", False)),
        first_opened_at=_parse_datetime(data.get("first_opened_at")),
        remaining_duration=data.get("remaining_duration"),
    )


def _raise_for_status(response: httpx.Response) -> None:
    """Translate an error response into the matching ``CapsuleError``."""
    if response.is_success:
        return

    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    detail = body.get("detail", response.text)

    code = response.status_code
    if code == 423:
        raise NotYetAvailable(float(body.get("available_in") or 0.0))
    if code == 410:
        raise AlreadyExpired(str(detail))
    if code == 404:
        raise CapsuleNotFound(str(detail))
    if code == 413:
        raise UploadTooLarge(str(detail))
    if code == 415:
        raise UnsupportedType(str(detail))
    if code == 422:
        raise ValueError(str(detail))
    if code >= 500:
        raise StoreUnavailable(f"Server error {code}: {detail}")
    raise CapsuleError(f"Request failed ({code}): {detail}")


class CapsuleClient:
    """Thin async wrapper over the capsule endpoints.

    Transport failures (refused connections, timeouts) are raised as
    ``StoreUnavailable`` so callers can treat them like any other transient
    store error.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, transport=transport
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "CapsuleClient":
        return self

    async def __aexit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        await self.close()

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise StoreUnavailable(f"Cannot reach {self.base_url}: {e}") from e
        _raise_for_status(response)
        return response

    def absolute_url(self, path: str) -> str:
        """Resolve a server-relative URL such as a signed media link."""
        return str(self._client.base_url.join(path))

    # ============== Capsules ==============

    async def create_text(
        self,
        content: str,
        *,
        name: str | None = None,
        available_at: datetime | None = None,
        view_duration: float = DEFAULT_VIEW_DURATION,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"content": content, "view_duration": view_duration}
        if name:
            payload["name"] = name
        if available_at is not None:
            payload["available_at"] = available_at.isoformat()
        response = await self._request("POST", "/api/capsules", json=payload)
        return response.json()

    async def upload(
        self,
        data: bytes,
        content_type: str,
        filename: str,
        *,
        name: str | None = None,
        available_at: datetime | None = None,
        view_duration: float = DEFAULT_VIEW_DURATION,
    ) -> dict[str, Any]:
        form: dict[str, str] = {"view_duration": str(view_duration)}
        if name:
            form["name"] = name
        if available_at is not None:
            form["available_at"] = available_at.isoformat()
        response = await self._request(
            "POST",
            "/api/capsules/upload",
            data=form,
            files={"file": (filename, data, content_type)},
        )
        return response.json()

    async def list_capsules(self) -> dict[str, Any]:
        response = await self._request("GET", "/api/capsules")
        return response.json()

    async def get_capsule(self, capsule_id: UUID | str) -> dict[str, Any]:
        response = await self._request("GET", f"/api/capsules/{capsule_id}")
        return response.json()

    async def open_capsule(self, capsule_id: UUID | str) -> dict[str, Any]:
        response = await self._request("POST", f"/api/capsules/{capsule_id}/open")
        return response.json()

    async def delete_capsule(self, capsule_id: UUID | str) -> None:
        await self._request("DELETE", f"/api/capsules/{capsule_id}")

    async def sweep(self) -> list[UUID]:
        response = await self._request("POST", "/api/capsules/sweep")
        return [UUID(value) for value in response.json().get("removed", [])]

    # ============== Changes ==============

    async def wait_for_change(
        self, since: int, timeout: float = DEFAULT_CHANGE_TIMEOUT
    ) -> dict[str, Any]:
        response = await self._request(
            "GET",
            "/api/changes",
            params={"since": since, "timeout": timeout},
            timeout=timeout + self.timeout,
        )
        return response.json()

    async def changes(
        self,
        since: int | None = None,
        timeout: float = DEFAULT_CHANGE_TIMEOUT,
    ) -> AsyncIterator[ChangeSignal]:
        """Yield a signal whenever the server reports a change.

        Starts from the server's current revision unless ``since`` is given.
        A revision going backwards means the server restarted; that is
        reported as a change too.
        """
        if since is None:
            since = (await self.wait_for_change(0, timeout=0))["revision"]

        revision = since
        while True:
            data = await self.wait_for_change(revision, timeout)
            current = int(data["revision"])
            if current == revision:
                continue
            revision = current
            yield ChangeSignal(revision=revision, reason="remote")


class ApiCapsuleSource:
    """Capsule source for ``AvailabilityPoller`` that reads over HTTP."""

    def __init__(self, client: CapsuleClient):
        self.client = client

    async def sweep_expired(self) -> list[UUID]:
        return await self.client.sweep()

    async def list_visible(self) -> list[Capsule]:
        listing = await self.client.list_capsules()
        return [capsule_from_payload(item) for item in listing.get("capsules", [])]
