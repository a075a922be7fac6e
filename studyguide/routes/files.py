from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse

from studyguide.dependencies import get_blob_store
from studyguide.errors import StorageError
from studyguide.services.storage import LocalBlobStore

router = APIRouter(prefix="/api", tags=["files"])


@router.get("/files/{ref:path}")
async def download_file(
    ref: str,
    expires: int,
    signature: str,
    blobs: LocalBlobStore = Depends(get_blob_store),
) -> FileResponse:
    """Serve a stored slide file behind a signed, expiring URL."""
    try:
        path = blobs.resolve(ref, expires, signature)
    except StorageError as exc:
        raise HTTPException(status_code=403, detail=str(exc))
    return FileResponse(path)
