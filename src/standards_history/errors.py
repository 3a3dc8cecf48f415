"""Error types and the stable persistence error taxonomy."""

from __future__ import annotations

from typing import Final

import psycopg
from psycopg import errors as pg_errors

RETRYABLE_CODES: Final[frozenset[str]] = frozenset(
    {
        "unavailable",
        "deadline-exceeded",
        "resource-exhausted",
        "aborted",
        "internal",
    }
)
PERMANENT_CODES: Final[frozenset[str]] = frozenset(
    {
        "permission-denied",
        "not-found",
        "already-exists",
        "unknown",
    }
)

PERSISTENCE_ERROR_TAXONOMY: Final[dict[str, object]] = {
    "schema_version": "persistence_error_taxonomy.v1",
    "retryable": sorted(RETRYABLE_CODES),
    "permanent": sorted(PERMANENT_CODES),
}

# Most specific classes first: several are subclasses of OperationalError.
_PSYCOPG_CODE_BY_CLASS: tuple[tuple[type[BaseException], str], ...] = (
    (pg_errors.QueryCanceled, "deadline-exceeded"),
    (pg_errors.TooManyConnections, "resource-exhausted"),
    (pg_errors.InsufficientResources, "resource-exhausted"),
    (pg_errors.SerializationFailure, "aborted"),
    (pg_errors.DeadlockDetected, "aborted"),
    (pg_errors.InsufficientPrivilege, "permission-denied"),
    (pg_errors.UniqueViolation, "already-exists"),
    (pg_errors.UndefinedTable, "not-found"),
    (psycopg.InternalError, "internal"),
    (psycopg.OperationalError, "unavailable"),
    (TimeoutError, "deadline-exceeded"),
    (ConnectionError, "unavailable"),
)


class HistoryEngineError(Exception):
    """Base class for activity history engine errors."""


class NotAuthenticatedError(HistoryEngineError):
    def __init__(self, message: str = "User not authenticated") -> None:
        super().__init__(message)


class StandardNotFoundError(HistoryEngineError):
    def __init__(self, standard_id: str) -> None:
        super().__init__(f"Standard {standard_id!r} not found")
        self.standard_id = standard_id


class StandardArchivedError(HistoryEngineError):
    def __init__(self, standard_id: str) -> None:
        super().__init__(
            f"Standard {standard_id!r} is archived. Unarchive it to resume logging."
        )
        self.standard_id = standard_id


class LogEntryNotFoundError(HistoryEngineError):
    def __init__(self, log_entry_id: str) -> None:
        super().__init__(f"Activity log {log_entry_id!r} not found")
        self.log_entry_id = log_entry_id


class PersistenceError(HistoryEngineError):
    """A persistence failure normalized to a stable code."""

    def __init__(self, code: str, message: str | None = None) -> None:
        super().__init__(message or f"Persistence operation failed ({code})")
        self.code = code

    def is_retryable(self) -> bool:
        return self.code in RETRYABLE_CODES

    def is_permission_error(self) -> bool:
        return self.code == "permission-denied"

    @classmethod
    def from_exception(cls, exc: BaseException) -> "PersistenceError":
        if isinstance(exc, PersistenceError):
            return exc
        error = cls(classify_persistence_error(exc), str(exc) or None)
        error.__cause__ = exc
        return error


def classify_persistence_error(exc: BaseException | None) -> str:
    """Map a driver or transport failure to a taxonomy code."""
    if exc is None:
        return "unknown"
    if isinstance(exc, PersistenceError):
        return exc.code
    for error_class, code in _PSYCOPG_CODE_BY_CLASS:
        if isinstance(exc, error_class):
            return code
    return "unknown"
