"""
Chapter Content Server - File Download Routes

Serves stored blobs as attachments.  Only bare filenames from the blob
directory are accepted; anything with a path component is treated as
not found.
"""

from fastapi import APIRouter
from fastapi.responses import FileResponse, JSONResponse
from loguru import logger

from src.services.blob_store import resolve_download

router = APIRouter(tags=["Files"])


@router.get("/download/{filename}")
async def download_file(filename: str):
    """Stream a stored file back with attachment headers."""
    path = resolve_download(filename)
    if path is None:
        logger.warning("⚠️ Download requested for missing file {!r}", filename)
        return JSONResponse(
            status_code=404,
            content={"success": False, "message": "File not found"},
        )
    return FileResponse(
        path,
        filename=path.name,
        content_disposition_type="attachment",
    )
