"""
Chapter Content Server - Content Slot Store

Each (subject, feature, chapter) slot holds at most one content item, either
an uploaded file (a reference into the blob repository) or an inline text.

Handles:
- Upsert of file or text content into a slot, replacing whatever was there
- Removal of a superseded blob once the replacing row has been committed
- Deletion of a slot together with its blob
- Exact-match lookup and ordered listing
- Reconciliation sweep for blobs no longer referenced by any slot

Writes to the same slot are serialized by a per-slot asyncio lock inside the
process and by SQLite's write lock across processes.  Blob removal always
happens after COMMIT, so a failed write never loses the previous content.
"""

import asyncio
import sqlite3
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from loguru import logger

from src.database import (
    delete_content_row,
    fetch_content_by_id,
    fetch_content_by_key,
    get_async_connection,
    get_referenced_file_paths,
    insert_content,
    list_content,
    transaction,
    update_content,
)
from src.errors import ErrorKind, Outcome, StoreError
from src.services.blob_store import list_blobs, location_for, remove_blob
from src.utils import parse_int_like, utc_timestamp

STORAGE_ERRORS = (sqlite3.Error, OSError)


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------
class ContentType(str, Enum):
    FILE = "file"
    TEXT = "text"


@dataclass(frozen=True)
class SlotKey:
    subject: str
    feature: str
    chapter: int

    @classmethod
    def parse(cls, subject: Any, feature: Any, chapter: Any) -> "SlotKey":
        """Build a key from request values, raising a validation StoreError."""
        missing = [
            name
            for name, value in (("subject", subject), ("feature", feature))
            if not isinstance(value, str) or not value.strip()
        ]
        if missing:
            raise StoreError(
                ErrorKind.VALIDATION,
                f"Missing or empty field(s): {', '.join(missing)}",
            )
        chapter_no = parse_int_like(chapter)
        if chapter_no is None:
            raise StoreError(ErrorKind.VALIDATION, "chapter must be an integer")
        return cls(subject.strip(), feature.strip(), chapter_no)


@dataclass(frozen=True)
class ContentItem:
    id: int
    key: SlotKey
    content_type: ContentType
    file_path: Optional[str]
    text_content: Optional[str]
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ContentItem":
        return cls(
            id=row["id"],
            key=SlotKey(row["subject"], row["feature"], row["chapter"]),
            content_type=ContentType(row["content_type"]),
            file_path=row["file_path"],
            text_content=row["text_content"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subject": self.key.subject,
            "feature": self.key.feature,
            "chapter": self.key.chapter,
            "content_type": self.content_type.value,
            "file_path": self.file_path,
            "text_content": self.text_content,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


# ---------------------------------------------------------------------------
# Per-slot locking
# ---------------------------------------------------------------------------
class SlotLocks:
    """Registry of asyncio locks keyed by slot, dropped once nobody holds them."""

    def __init__(self) -> None:
        self._locks: Dict[SlotKey, asyncio.Lock] = {}
        self._waiters: Dict[SlotKey, int] = {}

    @asynccontextmanager
    async def hold(self, key: SlotKey):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


_slot_locks = SlotLocks()


# ---------------------------------------------------------------------------
# Upsert
# ---------------------------------------------------------------------------
async def _upsert(
    key: SlotKey,
    content_type: ContentType,
    file_path: Optional[str],
    text_content: Optional[str],
) -> Outcome:
    """Insert or replace the item in *key*, then drop any superseded blob."""
    async with _slot_locks.hold(key):
        try:
            async with get_async_connection() as db:
                async with transaction(db):
                    existing = await fetch_content_by_key(
                        db, key.subject, key.feature, key.chapter
                    )
                    if existing:
                        item_id = existing["id"]
                        await update_content(
                            db,
                            item_id,
                            content_type.value,
                            file_path,
                            text_content,
                            utc_timestamp(after=existing["updated_at"]),
                        )
                    else:
                        item_id = await insert_content(
                            db,
                            key.subject,
                            key.feature,
                            key.chapter,
                            content_type.value,
                            file_path,
                            text_content,
                            utc_timestamp(),
                        )
                    row = await fetch_content_by_id(db, item_id)
        except STORAGE_ERRORS as e:
            logger.error(
                "❌ Failed to write {} content for {}: {}", content_type.value, key, e
            )
            return Outcome.failure(ErrorKind.STORAGE_FAULT, "Database error")

        # Committed: the previous blob, if any, is now unreferenced.
        stale = existing.get("file_path") if existing else None
        if stale and stale != file_path:
            if not await remove_blob(stale):
                logger.warning(
                    "⚠️ Slot {} replaced but old blob {} could not be removed",
                    key,
                    stale,
                )

        item = ContentItem.from_row(row)
        if existing:
            logger.info("🔄 Content replaced (id={}) in {}", item.id, key)
        else:
            logger.success("✅ Content added (id={}) in {}", item.id, key)
        return Outcome.success(item)


async def put_file(subject: Any, feature: Any, chapter: Any, location: str) -> Outcome:
    """
    Store a FILE item in a slot, replacing any existing item.

    *location* must reference a blob already written by the blob repository.
    If the write fails the new blob is removed again, since nothing
    references it.
    """
    try:
        key = SlotKey.parse(subject, feature, chapter)
    except StoreError as e:
        await remove_blob(location)
        return Outcome.from_error(e)

    outcome = await _upsert(key, ContentType.FILE, location, None)
    if not outcome.ok:
        await remove_blob(location)
    return outcome


async def put_text(subject: Any, feature: Any, chapter: Any, text: Any) -> Outcome:
    """Store a TEXT item in a slot, replacing any existing item."""
    try:
        key = SlotKey.parse(subject, feature, chapter)
    except StoreError as e:
        return Outcome.from_error(e)
    if text is None:
        text = ""
    if not isinstance(text, str):
        return Outcome.failure(ErrorKind.VALIDATION, "content must be a string")
    return await _upsert(key, ContentType.TEXT, None, text)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
async def get_content(subject: Any, feature: Any, chapter: Any) -> Outcome:
    """Exact-match lookup of a single slot."""
    try:
        key = SlotKey.parse(subject, feature, chapter)
    except StoreError as e:
        return Outcome.from_error(e)

    try:
        async with get_async_connection() as db:
            row = await fetch_content_by_key(db, key.subject, key.feature, key.chapter)
    except STORAGE_ERRORS as e:
        logger.error("❌ Failed to read {}: {}", key, e)
        return Outcome.failure(ErrorKind.STORAGE_FAULT, "Database error")

    if not row:
        return Outcome.failure(ErrorKind.NOT_FOUND, "No content found")
    return Outcome.success(ContentItem.from_row(row))


async def list_all() -> Outcome:
    """Every item, ordered by subject, feature, then chapter."""
    try:
        rows = await list_content()
    except STORAGE_ERRORS as e:
        logger.error("❌ Failed to list content: {}", e)
        return Outcome.failure(ErrorKind.STORAGE_FAULT, "Database error")
    items: List[ContentItem] = [ContentItem.from_row(r) for r in rows]
    return Outcome.success(items)


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------
async def delete_content(content_id: Any) -> Outcome:
    """
    Delete the item with *content_id* and, if it held a file, its blob.

    The row is deleted and committed first; blob removal afterwards is
    best-effort and never changes the result.
    """
    item_id = parse_int_like(content_id)
    if item_id is None:
        return Outcome.failure(ErrorKind.NOT_FOUND, "Content not found")

    try:
        async with get_async_connection() as db:
            row = await fetch_content_by_id(db, item_id)
        if not row:
            return Outcome.failure(ErrorKind.NOT_FOUND, "Content not found")

        # An item keeps its id across replacements, so its slot never changes.
        key = SlotKey(row["subject"], row["feature"], row["chapter"])
        async with _slot_locks.hold(key):
            async with get_async_connection() as db:
                async with transaction(db):
                    current = await fetch_content_by_id(db, item_id)
                    if current:
                        await delete_content_row(db, item_id)
    except STORAGE_ERRORS as e:
        logger.error("❌ Failed to delete content id={}: {}", item_id, e)
        return Outcome.failure(ErrorKind.STORAGE_FAULT, "Delete failed")

    if not current:
        return Outcome.failure(ErrorKind.NOT_FOUND, "Content not found")

    logger.info("🗑️ Content id={} deleted from {}", item_id, key)
    if current["file_path"]:
        if not await remove_blob(current["file_path"]):
            logger.warning(
                "⚠️ Content id={} deleted but blob {} could not be removed",
                item_id,
                current["file_path"],
            )
    return Outcome.success(item_id)


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------
async def sweep_orphan_blobs(grace_seconds: float) -> int:
    """
    Remove blobs that no slot references and that are older than
    *grace_seconds*.

    The grace period protects uploads that have been written but whose
    row has not been committed yet.  Returns the number of blobs removed.
    """
    referenced = await get_referenced_file_paths()
    cutoff = time.time() - grace_seconds
    removed = 0
    for name, mtime in list_blobs():
        if mtime > cutoff or location_for(name) in referenced:
            continue
        if await remove_blob(location_for(name)):
            removed += 1
    if removed:
        logger.info("🧹 Swept {} orphan blob(s)", removed)
    return removed
