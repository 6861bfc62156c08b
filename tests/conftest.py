"""
Chapter Content Server - Pytest Configuration & Shared Fixtures

Provides reusable fixtures for:
- An isolated SQLite database and blob directory per test
- A seeded admin credential (cheap bcrypt rounds)
- A TestClient running the full application lifespan
- Helpers for inspecting the blob directory and raw rows
"""

import asyncio
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List

import pytest

import src.auth as auth_module
import src.config as config_module
import src.database as database_module
import src.main as main_module
import src.services.blob_store as blob_store_module
from src.database import init_db

ADMIN_PASSWORD = "admin123"
ADMIN_HEADERS = {"X-Admin-Password": ADMIN_PASSWORD}


@dataclass
class Storage:
    root: Path
    db_path: Path
    upload_dir: Path

    def blob_names(self) -> List[str]:
        """Names of every file currently in the blob directory."""
        if not self.upload_dir.exists():
            return []
        return sorted(p.name for p in self.upload_dir.iterdir() if p.is_file())

    def rows(self) -> List[Dict[str, Any]]:
        """Read every content row straight from SQLite."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            return [dict(r) for r in conn.execute("SELECT * FROM content ORDER BY id")]
        finally:
            conn.close()

    def write_blob(self, name: str, data: bytes = b"blob") -> str:
        """Drop a file into the blob directory and return its location."""
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        (self.upload_dir / name).write_bytes(data)
        return f"/uploads/{name}"


# ---------------------------------------------------------------------------
# Storage fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def storage(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Storage:
    """Point the database and blob directory at a fresh temp location."""
    data_dir = tmp_path / "data"
    db_path = data_dir / "content.db"
    upload_dir = data_dir / "uploads"

    monkeypatch.setattr(config_module, "DATA_DIR", data_dir)
    monkeypatch.setattr(config_module, "DB_PATH", db_path)
    monkeypatch.setattr(config_module, "UPLOAD_DIR", upload_dir)
    monkeypatch.setattr(database_module, "DB_PATH", db_path)
    monkeypatch.setattr(blob_store_module, "UPLOAD_DIR", upload_dir)
    monkeypatch.setattr(main_module, "UPLOAD_DIR", upload_dir)
    # Minimum bcrypt cost keeps the suite fast
    monkeypatch.setattr(auth_module, "BCRYPT_ROUNDS", 4)
    monkeypatch.setattr(auth_module, "_dummy_hash", None)

    config_module.ensure_directories()
    init_db()
    return Storage(root=tmp_path, db_path=db_path, upload_dir=upload_dir)


@pytest.fixture
def seeded_admin(storage: Storage) -> Storage:
    """Storage with the default admin credential in place."""
    asyncio.run(auth_module.initialize_credentials())
    return storage


# ---------------------------------------------------------------------------
# HTTP client fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def client(storage: Storage):
    """A TestClient for a fresh app; entering it runs the startup lifespan."""
    from fastapi.testclient import TestClient

    with TestClient(main_module.create_app()) as test_client:
        yield test_client
