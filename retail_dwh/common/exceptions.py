"""Warehouse error kinds."""

from typing import Any, Dict, Optional


class WarehouseError(Exception):
    """Base class for warehouse engine errors."""
    pass


class TransientIOError(WarehouseError):
    """Source unavailable or lock contention. Retried per task retry policy."""
    pass


class OffsetConflictError(TransientIOError):
    """Stream offset moved under a consumer (compare-and-swap failed)."""
    pass


class QualityViolation(WarehouseError):
    """A record failed a validation rule. Quarantined, never retried."""

    def __init__(self, rule: str, reason: str, record: Optional[Dict[str, Any]] = None):
        super().__init__(f"{rule}: {reason}")
        self.rule = rule
        self.reason = reason
        self.record = record


class UnresolvedReferenceWarning(UserWarning):
    """Surrogate key lookup miss. Row is loaded with the sentinel key."""
    pass


class StaleStreamError(WarehouseError):
    """Consumer offset is older than the relation's retention horizon."""

    def __init__(self, stream_id: str, offset: int, horizon: int):
        super().__init__(
            f"Stream {stream_id} is stale: offset {offset} is behind retention horizon {horizon}; "
            f"rebuild the stream and backfill"
        )
        self.stream_id = stream_id
        self.offset = offset
        self.horizon = horizon


class StreamNotFoundError(WarehouseError):
    """Unknown stream id."""
    pass


class MergeInvariantViolation(WarehouseError):
    """More than one (or zero) current rows for a natural key."""

    def __init__(self, dimension: str, message: str):
        super().__init__(f"{dimension}: {message}")
        self.dimension = dimension


class DuplicateFactError(QualityViolation):
    """Degenerate identifier already loaded, or repeated in the batch. Quarantined."""

    def __init__(self, fact_table: str, identifier: tuple, reason: str):
        super().__init__('degenerate_id_unique', f"{fact_table} {identifier} {reason}")
        self.fact_table = fact_table
        self.identifier = identifier


class TaskGraphError(WarehouseError):
    """Invalid task graph declaration."""
    pass


class TaskTimeoutError(WarehouseError):
    """Task attempt exceeded its configured duration."""
    pass
