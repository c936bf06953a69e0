"""Exception taxonomy shared by the stores, indexes, and sync layer.

Pure module: no SQLite, Click, or FastAPI dependencies.
"""

from __future__ import annotations


class IssueSyncError(Exception):
    """Base class for all issuesync failures."""


class ValidationError(IssueSyncError, ValueError):
    """Malformed input rejected before any write (e.g. a grant with both user and group)."""


class TransientBackendError(IssueSyncError):
    """Store or index unreachable, locked, or timed out. Safe to retry on the next tick."""


class SchemaError(IssueSyncError, ValueError):
    """A document does not conform to its collection schema."""

    def __init__(self, message: str, *, key: str | None = None) -> None:
        super().__init__(message)
        self.key = key


class QueryError(IssueSyncError):
    """Malformed filter, unknown field, or read failure while querying."""
