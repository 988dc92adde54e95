from __future__ import annotations


class LedgerError(Exception):
    """Base class for errors raised by the scheduling and ledger core."""


class RecurrenceValidationError(LedgerError, ValueError):
    """Malformed recurrence definition, rejected before any write."""


class LessonValidationError(LedgerError, ValueError):
    """Malformed lesson time range or money amounts."""


class NotFoundError(LedgerError, LookupError):
    pass


class ConsistencyError(LedgerError):
    """A write would reference rows that no longer exist.

    Raised for materialization of a rule whose base lesson is gone and for
    exceptions targeting an unknown series. Callers must not swallow it.
    """


class LedgerBusyError(LedgerError):
    """Another allocation pass holds the student's ledger lock."""
