"""
Chapter Content Server - Error Kinds & Outcomes

Store and credential operations never raise for expected failures.  They
return an :class:`Outcome` carrying one of a small closed set of
:class:`ErrorKind` values, and only the route layer turns that into an
HTTP status code.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    STORAGE_FAULT = "storage_fault"

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self]


_STATUS_CODES = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.STORAGE_FAULT: 500,
}


class StoreError(Exception):
    """Raised inside the store to abort a transaction with a known error kind."""

    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message


@dataclass(frozen=True)
class Outcome:
    """Result of a store operation: either a value or an error kind + message."""

    ok: bool
    value: Any = None
    error: Optional[ErrorKind] = None
    message: str = ""

    @classmethod
    def success(cls, value: Any = None, message: str = "") -> "Outcome":
        return cls(ok=True, value=value, message=message)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> "Outcome":
        return cls(ok=False, error=kind, message=message)

    @classmethod
    def from_error(cls, exc: StoreError) -> "Outcome":
        return cls.failure(exc.kind, exc.message)
