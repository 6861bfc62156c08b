"""
Chapter Content Server - JSON API Routes

Provides all REST API endpoints for:
- Health check
- Admin password verification and rotation
- File upload and text save into a (subject, feature, chapter) slot
- Single-slot lookup and full listing
- Slot deletion

Every response carries a ``success`` flag and, on failure, a ``message``.
Upload, save, and delete require the admin password in the
``X-Admin-Password`` header.
"""

import time
from typing import Optional, Union

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from src.auth import require_admin, rotate_password, verify_password
from src.config import APP_VERSION
from src.errors import ErrorKind, Outcome, StoreError
from src.services.blob_store import save_upload, validate_upload
from src.services.content_store import (
    SlotKey,
    delete_content,
    get_content,
    list_all,
    put_file,
    put_text,
)

router = APIRouter(prefix="/api", tags=["API"])

# Track startup time for health check
_START_TIME = time.time()


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------
class VerifyPasswordRequest(BaseModel):
    password: Optional[str] = None


class ChangePasswordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    old_password: Optional[str] = Field(None, alias="oldPassword")
    new_password: str = Field(..., alias="newPassword")


class SaveTextRequest(BaseModel):
    subject: Optional[str] = None
    feature: Optional[str] = None
    chapter: Optional[Union[int, str]] = None
    content: Optional[str] = ""


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------
def _negative(message: str) -> dict:
    """A handled "nothing there / not allowed" result (HTTP 200)."""
    return {"success": False, "message": message}


def _failure(outcome: Outcome) -> JSONResponse:
    """Map a failed outcome to its error status."""
    kind = outcome.error or ErrorKind.STORAGE_FAULT
    return JSONResponse(
        status_code=kind.status_code,
        content={"success": False, "message": outcome.message},
    )


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------
@router.get("/health")
async def health_check():
    """Health check endpoint for the service."""
    return {
        "success": True,
        "message": "Backend running properly!",
        "version": APP_VERSION,
        "uptime_seconds": round(time.time() - _START_TIME, 2),
    }


# ---------------------------------------------------------------------------
# Admin credential
# ---------------------------------------------------------------------------
@router.post("/verify-password")
async def api_verify_password(body: VerifyPasswordRequest):
    """Check a candidate admin password."""
    outcome = await verify_password(body.password)
    if outcome.ok:
        return {"success": True}
    if outcome.error is ErrorKind.UNAUTHORIZED:
        return _negative("Incorrect password")
    return _failure(outcome)


@router.post("/change-password")
async def api_change_password(body: ChangePasswordRequest):
    """Rotate the admin password; the old password authorizes the change."""
    outcome = await rotate_password(body.old_password, body.new_password)
    if outcome.ok:
        logger.info("🔑 Admin password changed")
        return {"success": True, "message": outcome.message}
    if outcome.error is ErrorKind.UNAUTHORIZED:
        return _negative(outcome.message)
    return _failure(outcome)


# ---------------------------------------------------------------------------
# Content writes (admin only)
# ---------------------------------------------------------------------------
@router.post("/upload-file", dependencies=[Depends(require_admin)])
async def api_upload_file(
    file: Optional[UploadFile] = File(None),
    subject: Optional[str] = Form(None),
    feature: Optional[str] = Form(None),
    chapter: Optional[str] = Form(None),
):
    """
    Upload a file into a slot, replacing whatever the slot held.

    Type, size, and slot key are all checked before anything reaches the
    content store.
    """
    if file is None or not file.filename:
        return _failure(Outcome.failure(ErrorKind.VALIDATION, "No file uploaded"))

    checked = validate_upload(file.filename, file.content_type)
    if not checked.ok:
        return _failure(checked)

    try:
        SlotKey.parse(subject, feature, chapter)
    except StoreError as e:
        return _failure(Outcome.from_error(e))

    saved = await save_upload(file)
    if not saved.ok:
        return _failure(saved)

    outcome = await put_file(subject, feature, chapter, saved.value)
    if not outcome.ok:
        return _failure(outcome)

    return {
        "success": True,
        "message": "File uploaded successfully",
        "filePath": outcome.value.file_path,
        "content": outcome.value.to_dict(),
    }


@router.post("/save-text", dependencies=[Depends(require_admin)])
async def api_save_text(body: SaveTextRequest):
    """Save inline text into a slot, replacing whatever the slot held."""
    outcome = await put_text(body.subject, body.feature, body.chapter, body.content)
    if not outcome.ok:
        return _failure(outcome)
    return {
        "success": True,
        "message": "Text saved successfully",
        "content": outcome.value.to_dict(),
    }


@router.delete("/content/{content_id}", dependencies=[Depends(require_admin)])
async def api_delete_content(content_id: str):
    """Delete a slot's content (and its file, if any)."""
    outcome = await delete_content(content_id)
    if outcome.ok:
        return {"success": True, "message": "Deleted successfully"}
    if outcome.error is ErrorKind.NOT_FOUND:
        return _negative(outcome.message)
    return _failure(outcome)


# ---------------------------------------------------------------------------
# Content reads
# ---------------------------------------------------------------------------
@router.get("/content/{subject}/{feature}/{chapter}")
async def api_get_content(subject: str, feature: str, chapter: str):
    """Fetch the content of one slot."""
    outcome = await get_content(subject, feature, chapter)
    if outcome.ok:
        return {"success": True, "content": outcome.value.to_dict()}
    if outcome.error in (ErrorKind.NOT_FOUND, ErrorKind.VALIDATION):
        return _negative("No content found")
    return _failure(outcome)


@router.get("/all-content")
async def api_all_content():
    """List every slot, ordered by subject, feature, then chapter."""
    outcome = await list_all()
    if not outcome.ok:
        return _failure(outcome)
    return {"success": True, "content": [item.to_dict() for item in outcome.value]}
