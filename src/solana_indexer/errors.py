"""
Error taxonomy for the indexing pipeline.

Every error carries a human readable message plus a ``details`` mapping that
is safe to persist as audit metadata (never credentials).
"""

from typing import Any, Dict, Optional


class IndexerError(Exception):
    """Base class for all pipeline errors."""

    code = "INDEXER_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.details}


class ValidationError(IndexerError):
    """Bad input shape or missing required field. Raised before any side effect."""

    code = "VALIDATION_ERROR"


class NotFound(IndexerError):
    """Owner-scoped entity does not exist."""

    code = "NOT_FOUND"


class InvalidState(IndexerError):
    """Operation forbidden given the current active/inactive status."""

    code = "INVALID_STATE"


class UpstreamFailure(IndexerError):
    """Subscription provider or target database unreachable or erroring."""

    code = "UPSTREAM_FAILURE"


class UnsafeInput(IndexerError):
    """Column name or query text failed a safety check."""

    code = "UNSAFE_INPUT"


class UnknownType(ValidationError):
    """Transaction type has no destination table."""

    code = "UNKNOWN_TYPE"


class UnsafeColumnName(UnsafeInput):
    """Payload key is not a valid SQL identifier."""

    code = "UNSAFE_COLUMN_NAME"


class ReservedColumnCollision(ValidationError):
    """Payload key collides with a metadata column the pipeline writes itself."""

    code = "RESERVED_COLUMN_COLLISION"


class SubscriptionSwapFailure(UpstreamFailure):
    """Replacement subscription could not be created after the old one was deleted.

    The owner is left without an external subscription until the next
    successful reconcile.
    """

    code = "SUBSCRIPTION_SWAP_FAILURE"

    def __init__(self, message: str, deleted_handle: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, {"deleted_subscription_id": deleted_handle, "unsubscribed": True, **(details or {})})
        self.deleted_handle = deleted_handle
