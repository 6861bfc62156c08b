"""
Chapter Content Server - Configuration
All settings loaded from environment variables with sensible defaults.

Persistent state is a single SQLite database (content slots + the admin
credential) and a blob directory holding uploaded files under generated
unique names.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables from .env file
_ = load_dotenv()

# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------
APP_HOST = os.getenv("APP_HOST", "0.0.0.0")
APP_PORT = int(os.getenv("APP_PORT", os.getenv("PORT", "3000")))
APP_ENV = os.getenv("APP_ENV", "development")
APP_VERSION = os.getenv("APP_VERSION", "1.0.0")
DEBUG = os.getenv("DEBUG", "false").lower() == "true"

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------
BASE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = BASE_DIR.parent

DATA_DIR = Path(os.getenv("DATA_DIR", str(PROJECT_ROOT / "data")))
DB_PATH = Path(os.getenv("DB_PATH", str(DATA_DIR / "content.db")))

# Blob directory: uploaded files live here under generated names that are
# unrelated to the (subject, feature, chapter) slot they belong to.
UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR", str(DATA_DIR / "uploads")))
UPLOAD_URL_PREFIX = "/uploads"

# Frontend bundle, mounted at "/" only when the directory exists
PUBLIC_DIR = Path(os.getenv("PUBLIC_DIR", str(PROJECT_ROOT / "public")))

# ---------------------------------------------------------------------------
# Logging — stdout only
# ---------------------------------------------------------------------------
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# ---------------------------------------------------------------------------
# Admin credential
# ---------------------------------------------------------------------------
# Seeded on first start only; the operator is expected to rotate it.
DEFAULT_ADMIN_PASSWORD = os.getenv("DEFAULT_ADMIN_PASSWORD", "admin123")
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "10"))
# Header carrying the admin password on every mutating request
ADMIN_PASSWORD_HEADER = "X-Admin-Password"

# ---------------------------------------------------------------------------
# CORS
# ---------------------------------------------------------------------------
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "CORS_ORIGINS",
        "http://localhost:3000,http://localhost:5173,http://127.0.0.1:5500",
    ).split(",")
    if origin.strip()
]

# ---------------------------------------------------------------------------
# Upload limits
# ---------------------------------------------------------------------------
MAX_UPLOAD_SIZE_MB = int(os.getenv("MAX_UPLOAD_SIZE_MB", "50"))
MAX_UPLOAD_SIZE_BYTES = MAX_UPLOAD_SIZE_MB * 1024 * 1024

# Both the extension and the declared content-type must be accepted.
ALLOWED_MIME_TYPES = {
    ".pdf": {"application/pdf"},
    ".doc": {"application/msword"},
    ".docx": {
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    },
    ".txt": {"text/plain"},
    ".png": {"image/png"},
    ".jpg": {"image/jpeg", "image/jpg"},
    ".jpeg": {"image/jpeg", "image/jpg"},
}
ALLOWED_UPLOAD_EXTENSIONS = set(ALLOWED_MIME_TYPES)

# ---------------------------------------------------------------------------
# Orphan blob reconciliation
# ---------------------------------------------------------------------------
# How often (in seconds) to sweep the blob directory for unreferenced files.
# Set to 0 to disable the periodic sweep (the startup sweep still runs).
ORPHAN_SWEEP_INTERVAL = int(os.getenv("ORPHAN_SWEEP_INTERVAL", "3600"))
# Blobs younger than this are never swept (uploads may still be in flight)
ORPHAN_GRACE_SECONDS = int(os.getenv("ORPHAN_GRACE_SECONDS", "900"))


def ensure_directories() -> None:
    """Create the data directory, the database parent, and the blob directory."""
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
