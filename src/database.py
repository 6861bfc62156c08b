"""
Chapter Content Server - SQLite Database

One table of content slots, unique on (subject, feature, chapter), and a
single-row table holding the admin password hash.  Uses aiosqlite for async
operations within FastAPI and plain sqlite3 for the startup schema setup.

Connections are opened in autocommit mode; multi-statement writes go through
:func:`transaction`, which takes SQLite's write lock up front so a
read-then-write sequence cannot interleave with another writer.
"""

import sqlite3
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Set

import aiosqlite
from loguru import logger

from src.config import DB_PATH

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS content (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    subject TEXT NOT NULL,
    feature TEXT NOT NULL,
    chapter INTEGER NOT NULL,
    content_type TEXT NOT NULL CHECK (content_type IN ('file', 'text')),
    file_path TEXT,
    text_content TEXT,
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL,
    UNIQUE (subject, feature, chapter),
    CHECK (
        (content_type = 'file' AND file_path IS NOT NULL AND text_content IS NULL)
        OR (content_type = 'text' AND text_content IS NOT NULL AND file_path IS NULL)
    )
);

CREATE TABLE IF NOT EXISTS admin_settings (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    password_hash TEXT NOT NULL
);
"""

# ---------------------------------------------------------------------------
# Migration helpers
# ---------------------------------------------------------------------------
_MIGRATIONS = [
    # Migration 1: index file_path so the orphan sweep can resolve
    #              references without a full scan.
    {
        "check": "SELECT COUNT(*) FROM pragma_index_list('content') "
        "WHERE name='idx_content_file_path'",
        "apply": [
            "CREATE INDEX IF NOT EXISTS idx_content_file_path ON content(file_path)",
        ],
        "description": "Add file_path index",
    },
]


def _run_migrations(conn: sqlite3.Connection) -> None:
    """Run any pending schema migrations."""
    for migration in _MIGRATIONS:
        cursor = conn.execute(str(migration["check"]))
        (count,) = cursor.fetchone()
        if count == 0:
            logger.info("🔄 Running migration: {}", migration["description"])
            for stmt in migration["apply"]:
                conn.execute(stmt)
            conn.commit()
            logger.success("✅ Migration applied: {}", migration["description"])


# ---------------------------------------------------------------------------
# Initialization
# ---------------------------------------------------------------------------
def init_db() -> None:
    """Initialize the SQLite database, create tables, and run migrations."""
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    try:
        with sqlite3.connect(str(DB_PATH)) as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA_SQL)
            conn.commit()
            _run_migrations(conn)
        logger.success(f"✅ Database initialized at {DB_PATH}")
    except Exception as e:
        logger.critical(f"❌ Failed to initialize database: {e}")
        raise


# ---------------------------------------------------------------------------
# Async context managers (for use in FastAPI routes and services)
# ---------------------------------------------------------------------------
@asynccontextmanager
async def get_async_connection():
    """Async context manager for an autocommit aiosqlite connection."""
    db = await aiosqlite.connect(str(DB_PATH), timeout=30, isolation_level=None)
    db.row_factory = aiosqlite.Row
    try:
        yield db
    finally:
        await db.close()


@asynccontextmanager
async def transaction(db: aiosqlite.Connection):
    """Run the enclosed statements as one write transaction.

    ``BEGIN IMMEDIATE`` acquires the database write lock before the first
    read, so other writers (including other processes) wait until COMMIT.
    Any exception rolls the transaction back and propagates.
    """
    await db.execute("BEGIN IMMEDIATE")
    try:
        yield db
    except BaseException:
        await db.execute("ROLLBACK")
        raise
    else:
        await db.execute("COMMIT")


# ---------------------------------------------------------------------------
# Helper: convert aiosqlite.Row to plain dict
# ---------------------------------------------------------------------------
def row_to_dict(row) -> Dict[str, Any]:
    """Convert a database row to a plain dictionary."""
    if row is None:
        return {}
    return dict(row)


# ---------------------------------------------------------------------------
# Content rows (caller supplies the connection / transaction)
# ---------------------------------------------------------------------------
async def fetch_content_by_key(
    db: aiosqlite.Connection, subject: str, feature: str, chapter: int
) -> Optional[Dict[str, Any]]:
    """Exact-match lookup on the three slot key columns."""
    cursor = await db.execute(
        "SELECT * FROM content WHERE subject = ? AND feature = ? AND chapter = ?",
        (subject, feature, chapter),
    )
    row = await cursor.fetchone()
    return row_to_dict(row) if row else None


async def fetch_content_by_id(
    db: aiosqlite.Connection, content_id: int
) -> Optional[Dict[str, Any]]:
    """Fetch a single content row by its id."""
    cursor = await db.execute("SELECT * FROM content WHERE id = ?", (content_id,))
    row = await cursor.fetchone()
    return row_to_dict(row) if row else None


async def insert_content(
    db: aiosqlite.Connection,
    subject: str,
    feature: str,
    chapter: int,
    content_type: str,
    file_path: Optional[str],
    text_content: Optional[str],
    timestamp: str,
) -> int:
    """Insert a new content row and return its id."""
    cursor = await db.execute(
        """
        INSERT INTO content
            (subject, feature, chapter, content_type, file_path, text_content,
             created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            subject,
            feature,
            chapter,
            content_type,
            file_path,
            text_content,
            timestamp,
            timestamp,
        ),
    )
    return cursor.lastrowid or 0


async def update_content(
    db: aiosqlite.Connection,
    content_id: int,
    content_type: str,
    file_path: Optional[str],
    text_content: Optional[str],
    timestamp: str,
) -> bool:
    """Replace the payload of an existing row in place; created_at is untouched."""
    cursor = await db.execute(
        """
        UPDATE content
        SET content_type = ?, file_path = ?, text_content = ?, updated_at = ?
        WHERE id = ?
        """,
        (content_type, file_path, text_content, timestamp, content_id),
    )
    return cursor.rowcount > 0


async def delete_content_row(db: aiosqlite.Connection, content_id: int) -> bool:
    """Delete a content row by id. Returns True if a row was deleted."""
    cursor = await db.execute("DELETE FROM content WHERE id = ?", (content_id,))
    return cursor.rowcount > 0


async def list_content() -> List[Dict[str, Any]]:
    """Return every content row ordered by subject, feature, then chapter."""
    async with get_async_connection() as db:
        cursor = await db.execute(
            "SELECT * FROM content ORDER BY subject ASC, feature ASC, chapter ASC"
        )
        rows = await cursor.fetchall()
        return [row_to_dict(r) for r in rows]


async def get_referenced_file_paths() -> Set[str]:
    """Return every file location currently referenced by a content row."""
    async with get_async_connection() as db:
        cursor = await db.execute(
            "SELECT file_path FROM content WHERE file_path IS NOT NULL"
        )
        rows = await cursor.fetchall()
        return {r["file_path"] for r in rows}


# ---------------------------------------------------------------------------
# Admin credential (single row, id = 1)
# ---------------------------------------------------------------------------
async def get_password_hash() -> Optional[str]:
    """Return the stored admin password hash, or None if not yet seeded."""
    async with get_async_connection() as db:
        cursor = await db.execute("SELECT password_hash FROM admin_settings WHERE id = 1")
        row = await cursor.fetchone()
        return row["password_hash"] if row else None


async def insert_password_hash_if_absent(password_hash: str) -> bool:
    """Seed the credential row. Returns False if a row already existed."""
    async with get_async_connection() as db:
        cursor = await db.execute(
            "INSERT OR IGNORE INTO admin_settings (id, password_hash) VALUES (1, ?)",
            (password_hash,),
        )
        return cursor.rowcount > 0


async def swap_password_hash(expected_hash: str, new_hash: str) -> bool:
    """Compare-and-swap the credential hash.

    Only succeeds if the stored hash is still *expected_hash*, so two
    concurrent rotations cannot both win.
    """
    async with get_async_connection() as db:
        cursor = await db.execute(
            "UPDATE admin_settings SET password_hash = ? "
            "WHERE id = 1 AND password_hash = ?",
            (new_hash, expected_hash),
        )
        updated = cursor.rowcount > 0
        if updated:
            logger.info("🔑 Admin password hash rotated")
        return updated
