"""Signed media access."""

from fastapi import APIRouter, HTTPException, Query, status
from fastapi.responses import FileResponse

from tcap.errors import MediaUnavailable
from tcap.storage import get_media_store

router = APIRouter()


@router.get("/{path:path}")
async def get_media(
    path: str,
    expires: int = Query(...),
    signature: str = Query(...),
) -> FileResponse:
    """Serve a media blob for a URL issued by ``MediaStore.get_access_url``."""
    media = get_media_store()
    if not media.verify(path, expires, signature):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Media link is invalid or has expired",
        )

    try:
        target = media.resolve(path)
    except MediaUnavailable as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    if not target.is_file():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Media not found")

    return FileResponse(target)
