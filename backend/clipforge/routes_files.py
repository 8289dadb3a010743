from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import FileResponse

from clipforge.errors import PipelineError
from clipforge.services.storage import get_storage

router = APIRouter(prefix="/files", tags=["files"])


@router.get("/uploads/{key:path}")
async def get_upload(key: str, expires: int = Query(...), sig: str = Query(...)):
    """Serve an uploaded media file behind a signed, expiring URL."""
    try:
        path = get_storage().open_signed(key, expires, sig)
    except PipelineError as e:
        status_code = 403 if e.http_status == 400 else e.http_status
        raise HTTPException(status_code=status_code, detail=e.message) from None
    return FileResponse(path)
