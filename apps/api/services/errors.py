"""Typed error hierarchy for the generation lifecycle and credit ledger.

Every error carries an HTTP ``status_code`` so routers can surface it without
re-mapping. Errors that are recovered internally (missing indexes, mirror
propagation failures) never reach the caller.
"""

from __future__ import annotations


class EngineError(RuntimeError):
    """Base class for all domain errors."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailedError(EngineError):
    """Input rejected before any write."""

    status_code = 422


class InvalidTransitionError(ValidationFailedError):
    """Status transition not allowed from the record's current state."""

    status_code = 400


class InvalidCursorError(ValidationFailedError):
    status_code = 400


class IdempotencyKeyConflictError(ValidationFailedError):
    """Idempotency key already used for a different kind of ledger entry."""

    status_code = 409


class RecordNotFoundError(EngineError):
    status_code = 404


class MediaNotFoundError(RecordNotFoundError):
    pass


class AccountNotFoundError(RecordNotFoundError):
    pass


class InsufficientCreditsError(EngineError):
    status_code = 402

    def __init__(self, required: int, available: int):
        super().__init__(
            f"Insufficient credits. Required: {required}, available: {available}. "
            "Top up credits to continue."
        )
        self.required = required
        self.available = available


class TransientStoreError(EngineError):
    """Store-side condition that may succeed on retry or via another path."""

    status_code = 503


class MissingIndexError(TransientStoreError):
    """The store has no composite index for the requested filter/sort combination."""

    def __init__(self, collection: str, fields: tuple, sort_by: str):
        super().__init__(
            f"No composite index on {collection} for filters {list(fields)} ordered by {sort_by}"
        )
        self.collection = collection
        self.fields = fields
        self.sort_by = sort_by


class PropagationFailure(EngineError):
    """A best-effort write to the public mirror failed. Logged, never raised to callers."""


class StoreTransactionError(EngineError):
    """Transaction retries exhausted. Nothing was committed."""

    status_code = 503


class ConcurrentUpdateError(EngineError):
    """The record kept changing underneath the write. Nothing was committed."""

    status_code = 409
