"""
Chapter Content Server - Content Slot Store Tests

Tests for the src/services/content_store.py module. Validates:
- Slot key parsing (required fields, integer-like chapters)
- Text and file upserts, including replacement in place
- Superseded blob cleanup (file → file, file → text)
- created_at preservation and updated_at advancement across replaces
- Exact-match lookup and (subject, feature, chapter) ordering
- Delete with blob cleanup, and not-found handling
- Failure paths: storage faults keep the old blob, cleanup is best-effort
- Concurrent writes to the same slot
- Orphan blob sweep
"""

import asyncio
import os
import sqlite3
import time

import pytest

import src.services.content_store as content_store
from src.errors import ErrorKind, StoreError
from src.services.content_store import (
    ContentType,
    SlotKey,
    delete_content,
    get_content,
    list_all,
    put_file,
    put_text,
    sweep_orphan_blobs,
)


def run(coro):
    return asyncio.run(coro)


# ===========================================================================
# SlotKey.parse
# ===========================================================================


class TestSlotKeyParse:
    """Test building slot keys from request values."""

    def test_valid_key(self):
        key = SlotKey.parse("Math", "notes", 3)
        assert key == SlotKey("Math", "notes", 3)

    def test_chapter_string_is_coerced(self):
        assert SlotKey.parse("Math", "notes", "12").chapter == 12

    def test_chapter_with_whitespace(self):
        assert SlotKey.parse("Math", "notes", " 7 ").chapter == 7

    def test_subject_and_feature_are_stripped(self):
        key = SlotKey.parse("  Math ", " notes", 1)
        assert key.subject == "Math"
        assert key.feature == "notes"

    @pytest.mark.parametrize("chapter", [None, "", "abc", "1.5", 2.5, True])
    def test_invalid_chapter(self, chapter):
        with pytest.raises(StoreError) as exc_info:
            SlotKey.parse("Math", "notes", chapter)
        assert exc_info.value.kind is ErrorKind.VALIDATION

    @pytest.mark.parametrize(
        "subject,feature", [("", "notes"), ("Math", ""), ("   ", "notes"), (None, "x")]
    )
    def test_missing_subject_or_feature(self, subject, feature):
        with pytest.raises(StoreError) as exc_info:
            SlotKey.parse(subject, feature, 1)
        assert exc_info.value.kind is ErrorKind.VALIDATION


# ===========================================================================
# put_text / get_content
# ===========================================================================


class TestPutText:
    """Test text upserts."""

    def test_put_then_get(self, storage):
        outcome = run(put_text("Math", "notes", 1, "hello"))
        assert outcome.ok

        fetched = run(get_content("Math", "notes", 1))
        assert fetched.ok
        assert fetched.value.content_type is ContentType.TEXT
        assert fetched.value.text_content == "hello"
        assert fetched.value.file_path is None

    def test_empty_text_is_allowed(self, storage):
        outcome = run(put_text("Math", "notes", 1, ""))
        assert outcome.ok
        assert outcome.value.text_content == ""

    def test_none_text_is_stored_as_empty(self, storage):
        outcome = run(put_text("Math", "notes", 1, None))
        assert outcome.ok
        assert outcome.value.text_content == ""

    def test_non_string_text_rejected(self, storage):
        outcome = run(put_text("Math", "notes", 1, 42))
        assert not outcome.ok
        assert outcome.error is ErrorKind.VALIDATION
        assert storage.rows() == []

    def test_invalid_key_rejected_without_row(self, storage):
        outcome = run(put_text("", "notes", 1, "x"))
        assert outcome.error is ErrorKind.VALIDATION
        assert storage.rows() == []

    def test_second_put_replaces_in_place(self, storage):
        first = run(put_text("Math", "notes", 1, "A"))
        second = run(put_text("Math", "notes", 1, "B"))

        assert first.value.id == second.value.id
        rows = storage.rows()
        assert len(rows) == 1
        assert rows[0]["text_content"] == "B"

    def test_replace_preserves_created_at(self, storage):
        first = run(put_text("Math", "notes", 1, "A"))
        second = run(put_text("Math", "notes", 1, "B"))
        assert second.value.created_at == first.value.created_at

    def test_replace_advances_updated_at(self, storage):
        first = run(put_text("Math", "notes", 1, "A"))
        second = run(put_text("Math", "notes", 1, "B"))
        third = run(put_text("Math", "notes", 1, "C"))
        assert first.value.updated_at < second.value.updated_at < third.value.updated_at

    def test_string_chapter_matches_integer_chapter(self, storage):
        run(put_text("Math", "notes", "4", "four"))
        fetched = run(get_content("Math", "notes", 4))
        assert fetched.ok
        assert fetched.value.text_content == "four"

    def test_different_keys_are_independent(self, storage):
        run(put_text("Math", "notes", 1, "a"))
        run(put_text("Math", "notes", 2, "b"))
        run(put_text("Math", "quiz", 1, "c"))
        run(put_text("Physics", "notes", 1, "d"))
        assert len(storage.rows()) == 4


class TestGetContent:
    """Test exact-match lookup."""

    def test_missing_slot_is_not_found(self, storage):
        outcome = run(get_content("Math", "notes", 1))
        assert not outcome.ok
        assert outcome.error is ErrorKind.NOT_FOUND
        assert outcome.message == "No content found"

    def test_no_prefix_matching(self, storage):
        run(put_text("Mathematics", "notes", 1, "x"))
        assert run(get_content("Math", "notes", 1)).error is ErrorKind.NOT_FOUND

    def test_lookup_is_case_sensitive(self, storage):
        run(put_text("Math", "notes", 1, "x"))
        assert run(get_content("math", "notes", 1)).error is ErrorKind.NOT_FOUND

    def test_to_dict_shape(self, storage):
        run(put_text("Math", "notes", 1, "x"))
        data = run(get_content("Math", "notes", 1)).value.to_dict()
        assert set(data) == {
            "id",
            "subject",
            "feature",
            "chapter",
            "content_type",
            "file_path",
            "text_content",
            "created_at",
            "updated_at",
        }
        assert data["content_type"] == "text"
        assert data["chapter"] == 1


# ===========================================================================
# put_file
# ===========================================================================


class TestPutFile:
    """Test file upserts and superseded blob cleanup."""

    def test_put_file_then_get(self, storage):
        location = storage.write_blob("1-1.pdf", b"%PDF bytes")
        outcome = run(put_file("Math", "notes", 1, location))
        assert outcome.ok

        item = run(get_content("Math", "notes", 1)).value
        assert item.content_type is ContentType.FILE
        assert item.file_path == location
        assert item.text_content is None
        assert (storage.upload_dir / "1-1.pdf").read_bytes() == b"%PDF bytes"

    def test_replace_file_removes_old_blob(self, storage):
        old = storage.write_blob("1-old.pdf")
        new = storage.write_blob("2-new.pdf")
        run(put_file("Math", "notes", 1, old))
        run(put_file("Math", "notes", 1, new))

        assert storage.blob_names() == ["2-new.pdf"]
        assert run(get_content("Math", "notes", 1)).value.file_path == new

    def test_same_location_is_not_removed(self, storage):
        location = storage.write_blob("1-same.pdf")
        run(put_file("Math", "notes", 1, location))
        run(put_file("Math", "notes", 1, location))
        assert storage.blob_names() == ["1-same.pdf"]

    def test_file_replaced_by_text_leaves_no_orphan(self, storage):
        location = storage.write_blob("1-file.pdf")
        run(put_file("Math", "notes", 1, location))
        run(put_text("Math", "notes", 1, "now text"))

        assert storage.blob_names() == []
        item = run(get_content("Math", "notes", 1)).value
        assert item.content_type is ContentType.TEXT
        assert item.file_path is None

    def test_text_replaced_by_file(self, storage):
        run(put_text("Math", "notes", 1, "text first"))
        location = storage.write_blob("1-file.pdf")
        outcome = run(put_file("Math", "notes", 1, location))

        assert outcome.value.content_type is ContentType.FILE
        assert outcome.value.text_content is None
        assert len(storage.rows()) == 1

    def test_replacing_one_slot_keeps_other_blobs(self, storage):
        other = storage.write_blob("1-other.pdf")
        run(put_file("Math", "notes", 2, other))
        run(put_file("Math", "notes", 1, storage.write_blob("2-a.pdf")))
        run(put_file("Math", "notes", 1, storage.write_blob("3-b.pdf")))
        assert storage.blob_names() == ["1-other.pdf", "3-b.pdf"]

    def test_invalid_key_discards_new_blob(self, storage):
        location = storage.write_blob("1-new.pdf")
        outcome = run(put_file("Math", "notes", "x", location))
        assert outcome.error is ErrorKind.VALIDATION
        assert storage.blob_names() == []
        assert storage.rows() == []


# ===========================================================================
# Failure handling
# ===========================================================================


class TestFailures:
    """Storage faults and best-effort cleanup."""

    def test_failed_write_keeps_old_blob_and_row(self, storage, monkeypatch):
        old = storage.write_blob("1-old.pdf")
        run(put_file("Math", "notes", 1, old))

        async def broken_update(*args, **kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(content_store, "update_content", broken_update)
        new = storage.write_blob("2-new.pdf")
        outcome = run(put_file("Math", "notes", 1, new))

        assert not outcome.ok
        assert outcome.error is ErrorKind.STORAGE_FAULT
        # Old content untouched, unreferenced new upload discarded
        assert storage.blob_names() == ["1-old.pdf"]
        assert storage.rows()[0]["file_path"] == old

    def test_failed_insert_rolls_back(self, storage, monkeypatch):
        async def broken_insert(*args, **kwargs):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(content_store, "insert_content", broken_insert)
        outcome = run(put_text("Math", "notes", 1, "x"))
        assert outcome.error is ErrorKind.STORAGE_FAULT
        assert storage.rows() == []

    def test_blob_cleanup_failure_does_not_fail_replace(self, storage, monkeypatch):
        old = storage.write_blob("1-old.pdf")
        run(put_file("Math", "notes", 1, old))

        async def failing_remove(location):
            return False

        monkeypatch.setattr(content_store, "remove_blob", failing_remove)
        outcome = run(put_text("Math", "notes", 1, "text"))

        assert outcome.ok
        assert storage.rows()[0]["content_type"] == "text"

    def test_blob_cleanup_failure_does_not_fail_delete(self, storage, monkeypatch):
        item = run(put_file("Math", "notes", 1, storage.write_blob("1-a.pdf"))).value

        async def failing_remove(location):
            return False

        monkeypatch.setattr(content_store, "remove_blob", failing_remove)
        assert run(delete_content(item.id)).ok
        assert storage.rows() == []


# ===========================================================================
# list_all
# ===========================================================================


class TestListAll:
    """Test ordering of the full listing."""

    def test_empty(self, storage):
        outcome = run(list_all())
        assert outcome.ok
        assert outcome.value == []

    def test_chapter_order_is_numeric(self, storage):
        for chapter in (3, 10, 1, 2):
            run(put_text("Math", "notes", chapter, f"ch{chapter}"))
        chapters = [item.key.chapter for item in run(list_all()).value]
        assert chapters == [1, 2, 3, 10]

    def test_ordered_by_subject_feature_chapter(self, storage):
        run(put_text("Physics", "notes", 1, "p"))
        run(put_text("Math", "quiz", 1, "mq"))
        run(put_text("Math", "notes", 2, "mn2"))
        run(put_text("Math", "notes", 1, "mn1"))

        keys = [
            (i.key.subject, i.key.feature, i.key.chapter) for i in run(list_all()).value
        ]
        assert keys == [
            ("Math", "notes", 1),
            ("Math", "notes", 2),
            ("Math", "quiz", 1),
            ("Physics", "notes", 1),
        ]

    def test_reflects_current_state(self, storage):
        run(put_text("Math", "notes", 1, "a"))
        assert len(run(list_all()).value) == 1
        run(put_text("Math", "notes", 2, "b"))
        assert len(run(list_all()).value) == 2


# ===========================================================================
# delete_content
# ===========================================================================


class TestDeleteContent:
    """Test deletion by id."""

    def test_delete_text(self, storage):
        item = run(put_text("Math", "notes", 1, "x")).value
        assert run(delete_content(item.id)).ok
        assert run(get_content("Math", "notes", 1)).error is ErrorKind.NOT_FOUND

    def test_delete_file_removes_blob(self, storage):
        item = run(put_file("Math", "notes", 1, storage.write_blob("1-a.pdf"))).value
        assert run(delete_content(item.id)).ok
        assert storage.blob_names() == []
        assert storage.rows() == []

    def test_delete_accepts_string_id(self, storage):
        item = run(put_text("Math", "notes", 1, "x")).value
        assert run(delete_content(str(item.id))).ok

    def test_delete_unknown_id(self, storage):
        outcome = run(delete_content(999))
        assert outcome.error is ErrorKind.NOT_FOUND

    def test_delete_non_numeric_id(self, storage):
        assert run(delete_content("abc")).error is ErrorKind.NOT_FOUND

    def test_delete_twice(self, storage):
        item = run(put_text("Math", "notes", 1, "x")).value
        assert run(delete_content(item.id)).ok
        assert run(delete_content(item.id)).error is ErrorKind.NOT_FOUND

    def test_recreate_after_delete_resets_created_at(self, storage):
        first = run(put_text("Math", "notes", 1, "x")).value
        run(delete_content(first.id))
        second = run(put_text("Math", "notes", 1, "y")).value
        assert second.id != first.id
        assert second.created_at > first.created_at


# ===========================================================================
# Concurrency
# ===========================================================================


class TestConcurrency:
    """Concurrent writes to the same slot."""

    def test_concurrent_text_writes_leave_one_value(self, storage):
        async def race():
            return await asyncio.gather(
                put_text("Math", "notes", 1, "X"),
                put_text("Math", "notes", 1, "Y"),
            )

        outcomes = run(race())
        assert all(o.ok for o in outcomes)
        rows = storage.rows()
        assert len(rows) == 1
        assert rows[0]["text_content"] in ("X", "Y")

    def test_concurrent_file_writes_leave_one_blob(self, storage):
        locations = [storage.write_blob(f"{i}-race.pdf") for i in range(5)]

        async def race():
            return await asyncio.gather(
                *(put_file("Math", "notes", 1, loc) for loc in locations)
            )

        outcomes = run(race())
        assert all(o.ok for o in outcomes)
        rows = storage.rows()
        assert len(rows) == 1
        assert storage.blob_names() == [rows[0]["file_path"].rsplit("/", 1)[-1]]

    def test_locks_are_released(self, storage):
        async def writes():
            await asyncio.gather(
                put_text("Math", "notes", 1, "a"),
                put_text("Math", "notes", 2, "b"),
            )

        run(writes())
        assert len(content_store._slot_locks) == 0


# ===========================================================================
# sweep_orphan_blobs
# ===========================================================================


class TestSweepOrphanBlobs:
    """Test the reconciliation sweep."""

    def _age(self, storage, name, seconds):
        path = storage.upload_dir / name
        past = time.time() - seconds
        os.utime(path, (past, past))

    def test_removes_old_unreferenced_blob(self, storage):
        storage.write_blob("1-orphan.pdf")
        self._age(storage, "1-orphan.pdf", 3600)
        assert run(sweep_orphan_blobs(60)) == 1
        assert storage.blob_names() == []

    def test_keeps_referenced_blob(self, storage):
        location = storage.write_blob("1-kept.pdf")
        run(put_file("Math", "notes", 1, location))
        self._age(storage, "1-kept.pdf", 3600)
        assert run(sweep_orphan_blobs(60)) == 0
        assert storage.blob_names() == ["1-kept.pdf"]

    def test_keeps_recent_unreferenced_blob(self, storage):
        storage.write_blob("1-inflight.pdf")
        assert run(sweep_orphan_blobs(600)) == 0
        assert storage.blob_names() == ["1-inflight.pdf"]
