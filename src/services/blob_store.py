"""
Chapter Content Server - Blob Repository

Durable byte storage for uploaded files.  Each blob is written once under a
generated unique name (``<epoch-ms>-<random><ext>``) inside UPLOAD_DIR and
is referenced from the database by its location, ``/uploads/<name>``.

This module only knows how to write, find, and remove blobs.  Deciding
*when* a blob may be removed is the content store's job.
"""

import os
import random
import time
from pathlib import Path
from typing import List, Optional, Tuple

import aiofiles
from fastapi import UploadFile
from loguru import logger

from src.config import (
    ALLOWED_MIME_TYPES,
    ALLOWED_UPLOAD_EXTENSIONS,
    MAX_UPLOAD_SIZE_BYTES,
    MAX_UPLOAD_SIZE_MB,
    UPLOAD_DIR,
    UPLOAD_URL_PREFIX,
)
from src.errors import ErrorKind, Outcome
from src.utils import safe_basename

CHUNK_SIZE = 65536
NAME_ATTEMPTS = 5


# ---------------------------------------------------------------------------
# Naming
# ---------------------------------------------------------------------------
def generate_blob_name(original_filename: str) -> str:
    """Build a unique blob name that keeps only the original extension."""
    ext = Path(safe_basename(original_filename)).suffix.lower()
    return f"{int(time.time() * 1000)}-{random.randint(0, 10**9 - 1)}{ext}"


def location_for(name: str) -> str:
    """Return the stored location for a blob name."""
    return f"{UPLOAD_URL_PREFIX}/{name}"


def path_for_location(location: Optional[str]) -> Optional[Path]:
    """Resolve a stored location to its file inside UPLOAD_DIR.

    Only the final path component is used, so a tampered location can
    never point outside the blob directory.
    """
    if not location:
        return None
    name = safe_basename(location)
    if not name:
        return None
    return UPLOAD_DIR / name


# ---------------------------------------------------------------------------
# Upload validation & storage
# ---------------------------------------------------------------------------
def validate_upload(filename: Optional[str], content_type: Optional[str]) -> Outcome:
    """Check that both the extension and the declared content-type are allowed."""
    ext = Path(safe_basename(filename or "")).suffix.lower()
    declared = (content_type or "").split(";", 1)[0].strip().lower()

    if ext not in ALLOWED_UPLOAD_EXTENSIONS or declared not in ALLOWED_MIME_TYPES[ext]:
        logger.warning(
            "🚫 Rejected upload {} (content-type={})", filename, content_type or "-"
        )
        return Outcome.failure(
            ErrorKind.VALIDATION,
            "Only PDF, DOC, DOCX, TXT, and image files are allowed!",
        )
    return Outcome.success(ext)


async def save_upload(upload: UploadFile) -> Outcome:
    """
    Stream an uploaded file into the blob directory.

    Returns a success outcome whose value is the new blob's location.  An
    upload over the size ceiling is rejected and its partial file removed.
    """
    UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
    total_size = 0
    created: Optional[Path] = None

    try:
        # Exclusive create: an existing blob is never overwritten
        for _ in range(NAME_ATTEMPTS):
            name = generate_blob_name(upload.filename or "")
            target = UPLOAD_DIR / name
            try:
                f = await aiofiles.open(target, "xb")
            except FileExistsError:
                logger.debug("🔁 Blob name {} already taken, retrying", name)
                continue
            created = target
            break
        else:
            logger.error("❌ No free blob name for upload {}", upload.filename)
            return Outcome.failure(ErrorKind.STORAGE_FAULT, "Failed to store file")

        async with f:
            while chunk := await upload.read(CHUNK_SIZE):
                total_size += len(chunk)
                if total_size > MAX_UPLOAD_SIZE_BYTES:
                    break
                await f.write(chunk)
    except OSError as e:
        logger.error("❌ Failed to store upload {}: {}", upload.filename, e)
        if created is not None:
            _discard(created)
        return Outcome.failure(ErrorKind.STORAGE_FAULT, "Failed to store file")

    if total_size > MAX_UPLOAD_SIZE_BYTES:
        _discard(target)
        logger.warning("🚫 Upload {} exceeds {}MB", upload.filename, MAX_UPLOAD_SIZE_MB)
        return Outcome.failure(
            ErrorKind.VALIDATION,
            f"File too large. Maximum size is {MAX_UPLOAD_SIZE_MB}MB.",
        )

    logger.info("📥 Stored blob {} ({} bytes) from {}", name, total_size, upload.filename)
    return Outcome.success(location_for(name))


def _discard(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.error("❌ Could not remove partial upload {}: {}", path, e)


# ---------------------------------------------------------------------------
# Removal & lookup
# ---------------------------------------------------------------------------
async def remove_blob(location: Optional[str]) -> bool:
    """
    Remove the blob at *location*.

    Best-effort: a blob that is already gone counts as removed; any other
    OS error is logged and reported as False, never raised.
    """
    path = path_for_location(location)
    if path is None:
        logger.warning("⚠️ Ignoring removal of unresolvable blob location {!r}", location)
        return False
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.error("❌ Failed to remove blob {}: {}", path.name, e)
        return False
    logger.info("🗑️ Removed blob {}", path.name)
    return True


def resolve_download(filename: str) -> Optional[Path]:
    """Return the blob file for a download request, or None if absent."""
    name = safe_basename(filename)
    if not name or name != filename:
        return None
    path = UPLOAD_DIR / name
    return path if path.is_file() else None


def list_blobs() -> List[Tuple[str, float]]:
    """Return ``(name, mtime)`` for every blob currently in the directory."""
    if not UPLOAD_DIR.is_dir():
        return []
    blobs: List[Tuple[str, float]] = []
    with os.scandir(UPLOAD_DIR) as entries:
        for entry in entries:
            if entry.is_file():
                blobs.append((entry.name, entry.stat().st_mtime))
    return blobs
