"""
Chapter Content Server - Shared Utilities

Common helpers used across multiple modules to avoid duplication.
"""

import re
from datetime import datetime, timedelta, timezone
from pathlib import PurePosixPath
from typing import Any, Optional

_INT_RE = re.compile(r"^[+-]?\d+$")


def parse_int_like(value: Any) -> Optional[int]:
    """
    Interpret *value* as an integer if it is one or looks like one.

    Accepts ints, integral floats, and strings such as ``"3"`` or ``" 12 "``.
    Returns None for anything else (including booleans).
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        stripped = value.strip()
        if _INT_RE.match(stripped):
            return int(stripped)
    return None


def safe_basename(name: str) -> str:
    """
    Reduce a client-supplied name to a bare filename.

    Strips any directory components (either slash style) so the result can
    never escape the directory it is joined onto.  Returns "" for names that
    collapse to nothing, end in a slash (a directory), or name a dot entry.
    """
    normalized = name.replace("\\", "/")
    if normalized.endswith("/"):
        return ""
    base = PurePosixPath(normalized).name
    if base in ("", ".", ".."):
        return ""
    return base


def utc_timestamp(after: Optional[str] = None) -> str:
    """
    Return the current UTC time as an ISO-8601 string with microseconds.

    If *after* is given (a timestamp previously returned by this function),
    the result is guaranteed to sort strictly after it even if the wall
    clock has not advanced or has stepped backwards.
    """
    now = datetime.now(timezone.utc)
    if after:
        try:
            previous = datetime.fromisoformat(after)
        except ValueError:
            previous = None
        if previous is not None and previous.tzinfo is None:
            previous = previous.replace(tzinfo=timezone.utc)
        if previous is not None and now <= previous:
            now = previous + timedelta(microseconds=1)
    return now.isoformat(timespec="microseconds")
