"""Error taxonomy of the single-table access layer.

Only ``StoreUnavailable`` is produced after local recovery (retries); every
other kind is deterministic and propagates to the caller unchanged.
"""
from __future__ import annotations
from typing import List, Optional, Sequence


class StoreError(Exception):
    """Base class for all access-layer errors."""


class InvalidIdentity(StoreError):
    """Missing or malformed identity fields, or a malformed store request."""


class UnknownEntityType(StoreError):
    """Stored item has no type tag, or one the codec does not know."""


class MalformedItem(StoreError):
    """Stored item is missing a required field or carries a wrong-typed one."""


class NotFound(StoreError):
    """No item exists at the requested key."""


class ConstraintViolation(StoreError):
    """A business rule (uniqueness, reference, tree shape) rejected the write."""


class TransactionConflict(StoreError):
    """A transactional write was cancelled because a precondition failed.

    ``reasons`` holds one entry per operation, in submission order: ``None``
    for operations that were fine, otherwise a short code such as
    ``"ConditionalCheckFailed"`` or ``"DuplicateItem"``.
    """

    def __init__(self, message: str, reasons: Optional[Sequence[Optional[str]]] = None):
        super().__init__(message)
        self.reasons: List[Optional[str]] = list(reasons or [])

    def failed_indexes(self) -> List[int]:
        return [i for i, reason in enumerate(self.reasons) if reason is not None]


class StoreUnavailable(StoreError):
    """Transient store failure that persisted through every retry."""
