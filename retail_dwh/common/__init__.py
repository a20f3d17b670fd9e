"""Shared types and errors."""

from .attributes import AttributeBag
from .exceptions import (
    WarehouseError, TransientIOError, OffsetConflictError, QualityViolation,
    UnresolvedReferenceWarning, StaleStreamError, StreamNotFoundError,
    MergeInvariantViolation, DuplicateFactError, TaskGraphError, TaskTimeoutError
)

__all__ = [
    'AttributeBag',
    'WarehouseError', 'TransientIOError', 'OffsetConflictError', 'QualityViolation',
    'UnresolvedReferenceWarning', 'StaleStreamError', 'StreamNotFoundError',
    'MergeInvariantViolation', 'DuplicateFactError', 'TaskGraphError', 'TaskTimeoutError',
]
