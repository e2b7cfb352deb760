"""Error taxonomy for statement generation and editing.

A period with no activity is not an error: builders return ``None`` and bulk or
scheduled runs record the target as skipped.
"""
from __future__ import annotations


class StatementError(Exception):
    """Base class for every error raised by the statement engine."""


class ValidationError(StatementError):
    """Malformed request, stale client index, or edit of a locked statement."""


class NotFoundError(StatementError):
    """Unknown statement, listing, group, owner or job."""


class SourceFetchError(StatementError):
    """An upstream reservation/expense/listing source could not be read."""

    def __init__(self, message: str, property_id: object = None):
        super().__init__(message)
        self.property_id = property_id


class PersistenceError(StatementError):
    """A write to the statement store failed."""


class ConflictError(PersistenceError):
    """The stored statement changed since it was loaded (version mismatch)."""
