"""Exception hierarchy for the import and classification pipeline.

Parsing, size and storage errors are fatal to a batch. Upstream errors come
from the generative completion service and carry no retry semantics: callers
decide whether to degrade or fail. Persistence errors wrap sqlite3 failures.
"""

from __future__ import annotations


class LedgerpipeError(Exception):
    """Base class for all pipeline errors."""


class FormatError(LedgerpipeError):
    """Raised when a statement cannot be parsed in its declared format."""


class SizeLimitError(LedgerpipeError):
    """Raised when a payload exceeds the ceiling for its format."""

    def __init__(self, size: int, limit: int, hint: str | None = None):
        self.size = size
        self.limit = limit
        message = (
            f"File too large ({size / 1024:.0f} KB); maximum is {limit / 1024:.0f} KB"
        )
        if hint:
            message = f"{message}. {hint}"
        super().__init__(message)


class StorageError(LedgerpipeError):
    """Raised when an uploaded file cannot be fetched from blob storage."""


class UpstreamError(LedgerpipeError):
    """Raised when the generative completion service fails."""


class UpstreamRateLimited(UpstreamError):
    """The completion service rejected the call with a rate limit."""


class UpstreamQuotaExhausted(UpstreamError):
    """The completion service account has run out of credits."""


class UpstreamTimeout(UpstreamError):
    """The completion call exceeded its time box."""


class PersistenceError(LedgerpipeError):
    """Raised when the relational store rejects a read or write."""


class ClassificationFailure(LedgerpipeError):
    """Raised when a single record cannot be classified due to an error.

    Distinct from "unresolved": a stage that finds no answer returns None.
    """

    def __init__(self, transaction_id: str, cause: Exception):
        self.transaction_id = transaction_id
        self.cause = cause
        super().__init__(f"Classification failed for {transaction_id}: {cause}")


class InvalidBatchTransition(LedgerpipeError):
    """Raised when an import batch is moved to a state it cannot reach."""

    def __init__(self, batch_id: str, current: str, target: str):
        self.batch_id = batch_id
        self.current = current
        self.target = target
        super().__init__(
            f"Batch {batch_id} cannot move from '{current}' to '{target}'"
        )


class UnknownAccountError(LedgerpipeError):
    """Raised when an account does not exist in the given organization."""


class PatternConflictError(LedgerpipeError):
    """Raised when a learned pattern keeps changing under a concurrent writer."""
