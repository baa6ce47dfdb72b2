"""Change notification long-poll endpoint."""

from fastapi import APIRouter, Query

from tcap.api.schemas import ChangesResponse
from tcap.lifecycle import get_change_hub

router = APIRouter()

MAX_WAIT = 60.0


@router.get("", response_model=ChangesResponse)
async def wait_for_changes(
    since: int = Query(0, ge=0, description="Last revision the client has seen"),
    timeout: float = Query(25.0, ge=0, le=MAX_WAIT, description="Seconds to wait"),
) -> ChangesResponse:
    """Block until the capsule table changes after ``since``.

    Returns immediately when the hub is already past ``since``. On timeout
    the current revision comes back with ``changed`` false.
    """
    hub = get_change_hub()
    revision = await hub.wait_for_change(since, timeout=timeout)
    return ChangesResponse(revision=revision, changed=revision > since)
