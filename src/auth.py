"""
Chapter Content Server - Admin Credential

A single bcrypt password hash gates every mutating operation.  There are no
sessions: each mutating request carries the password in the
``X-Admin-Password`` header and is verified on its own.

Usage:
    - Call `initialize_credentials()` once at startup.
    - Add `Depends(require_admin)` to every mutating route.
    - `verify_password` / `rotate_password` back the password endpoints.
"""

import asyncio
import sqlite3
from typing import Optional

import bcrypt
from fastapi import HTTPException, Request
from loguru import logger

from src.config import ADMIN_PASSWORD_HEADER, BCRYPT_ROUNDS, DEFAULT_ADMIN_PASSWORD
from src.database import get_password_hash, insert_password_hash_if_absent, swap_password_hash
from src.errors import ErrorKind, Outcome

# bcrypt only reads the first 72 bytes of a password
_BCRYPT_MAX_BYTES = 72

# Compared against when no credential row exists, so a missing record costs
# the same as a wrong password.
_dummy_hash: Optional[bytes] = None

# ---------------------------------------------------------------------------
# Hash helpers
# ---------------------------------------------------------------------------


def _encode(password: str) -> bytes:
    return password.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(password: str) -> str:
    """Return a fresh bcrypt hash (with its own salt) for *password*."""
    return bcrypt.hashpw(_encode(password), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode(
        "ascii"
    )


def _checkpw(password: str, password_hash: Optional[str]) -> bool:
    """Constant-structure bcrypt comparison; always performs one hash."""
    global _dummy_hash
    if password_hash is None:
        if _dummy_hash is None:
            _dummy_hash = bcrypt.hashpw(b"", bcrypt.gensalt(rounds=BCRYPT_ROUNDS))
        bcrypt.checkpw(_encode(password), _dummy_hash)
        return False
    try:
        return bcrypt.checkpw(_encode(password), password_hash.encode("ascii"))
    except ValueError:
        logger.error("❌ Stored admin password hash is malformed")
        return False


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def initialize_credentials() -> bool:
    """
    Seed the admin credential with the default password if none exists.

    Idempotent.  Returns True if the default was seeded by this call.
    The default is reported to the operator through the log only.
    """
    if await get_password_hash() is not None:
        return False
    password_hash = await asyncio.to_thread(hash_password, DEFAULT_ADMIN_PASSWORD)
    seeded = await insert_password_hash_if_absent(password_hash)
    if seeded:
        logger.warning(
            "🔑 Default admin password set to: {} (please change it!)",
            DEFAULT_ADMIN_PASSWORD,
        )
    return seeded


async def verify_password(candidate: Optional[str]) -> Outcome:
    """
    Check *candidate* against the stored hash.

    A wrong password and a missing credential record produce the same
    UNAUTHORIZED outcome and the same amount of hashing work.
    """
    if not isinstance(candidate, str):
        candidate = ""
    try:
        stored = await get_password_hash()
    except (sqlite3.Error, OSError) as e:
        logger.error("❌ Failed to read admin credential: {}", e)
        return Outcome.failure(ErrorKind.STORAGE_FAULT, "Database error")

    if await asyncio.to_thread(_checkpw, candidate, stored):
        return Outcome.success(stored)
    return Outcome.failure(ErrorKind.UNAUTHORIZED, "Incorrect password")


async def rotate_password(old_candidate: Optional[str], new_password: str) -> Outcome:
    """
    Replace the stored hash with a hash of *new_password*.

    Succeeds only if *old_candidate* verifies.  The swap is conditional on
    the hash that was verified, so of two concurrent rotations only one
    can win; the loser is rejected as if its old password were wrong.
    """
    verified = await verify_password(old_candidate)
    if not verified.ok:
        if verified.error is ErrorKind.UNAUTHORIZED:
            return Outcome.failure(ErrorKind.UNAUTHORIZED, "Old password incorrect")
        return verified

    new_hash = await asyncio.to_thread(hash_password, new_password)
    try:
        swapped = await swap_password_hash(verified.value, new_hash)
    except (sqlite3.Error, OSError) as e:
        logger.error("❌ Failed to update admin credential: {}", e)
        return Outcome.failure(ErrorKind.STORAGE_FAULT, "Failed to update password")

    if not swapped:
        logger.warning("🔒 Password rotation lost a race with another rotation")
        return Outcome.failure(ErrorKind.UNAUTHORIZED, "Old password incorrect")
    return Outcome.success(message="Password updated successfully!")


# ---------------------------------------------------------------------------
# FastAPI dependency (admin gateway)
# ---------------------------------------------------------------------------


async def require_admin(request: Request) -> None:
    """Reject the request unless it carries the current admin password."""
    outcome = await verify_password(request.headers.get(ADMIN_PASSWORD_HEADER))
    if outcome.ok:
        return
    if outcome.error is ErrorKind.STORAGE_FAULT:
        raise HTTPException(status_code=500, detail="Database error")
    logger.warning(
        "🔒 Rejected {} {} — admin credential missing or wrong",
        request.method,
        request.url.path,
    )
    raise HTTPException(status_code=401, detail="Unauthorized")
