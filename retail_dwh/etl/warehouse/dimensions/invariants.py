"""
Dimension invariants and merge halts.

Each natural key's rows are rebuilt into a DimensionHistory: the versions in
effective order plus a pointer to the current one. Type 2 requires exactly
one current version and gapless, non-overlapping intervals; Type 1 requires
exactly one row. A violation found during a merge halts the dimension until
an operator releases it.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional

from retail_dwh.common.exceptions import MergeInvariantViolation
from .definition import DimensionSpec, UNKNOWN_MEMBER_KEY

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DimensionVersion:
    surrogate_key: int
    effective_date: date
    expiry_date: Optional[date]
    is_current: bool
    record_hash: Optional[str]


@dataclass
class DimensionHistory:
    natural_key: str
    versions: List[DimensionVersion] = field(default_factory=list)
    current_index: Optional[int] = None

    @classmethod
    def from_versions(cls, natural_key: str, versions: List[DimensionVersion]) -> 'DimensionHistory':
        ordered = sorted(versions, key=lambda v: (v.effective_date, v.surrogate_key))
        current = [i for i, v in enumerate(ordered) if v.is_current]
        return cls(natural_key, ordered, current[-1] if current else None)

    @property
    def current(self) -> Optional[DimensionVersion]:
        if self.current_index is None:
            return None
        return self.versions[self.current_index]

    def as_of(self, as_of_date: date) -> Optional[DimensionVersion]:
        """Version whose [effective, expiry] interval contains the date."""
        for version in reversed(self.versions):
            if version.effective_date <= as_of_date and (
                version.expiry_date is None or as_of_date <= version.expiry_date
            ):
                return version
        return None

    def violations(self) -> List[str]:
        problems = []
        current_count = sum(1 for v in self.versions if v.is_current)
        if current_count != 1:
            problems.append(f"{self.natural_key}: {current_count} current rows")

        previous = None
        for version in self.versions:
            if version.is_current and version.expiry_date is not None:
                problems.append(f"{self.natural_key}: current row {version.surrogate_key} has an expiry date")
            if previous is not None:
                if previous.expiry_date is None:
                    problems.append(f"{self.natural_key}: open interval before row {version.surrogate_key}")
                elif previous.expiry_date != version.effective_date - timedelta(days=1):
                    problems.append(
                        f"{self.natural_key}: rows {previous.surrogate_key} and {version.surrogate_key} "
                        f"are not contiguous ({previous.expiry_date} -> {version.effective_date})"
                    )
            previous = version
        return problems


def load_histories(conn, spec: DimensionSpec, keys: Optional[List[str]] = None) -> Dict[str, DimensionHistory]:
    """Rebuild version histories for a Type 2 dimension (all keys or a subset)."""
    key_filter = ''
    params = [UNKNOWN_MEMBER_KEY]
    if keys is not None:
        if not keys:
            return {}
        key_filter = f" AND {spec.natural_key} IN ({','.join(['?'] * len(keys))})"
        params.extend(keys)

    rows = conn.fetchall(f"""
        SELECT {spec.natural_key}, {spec.surrogate_key}, effective_date, expiry_date, is_current, record_hash
        FROM {spec.name}
        WHERE {spec.surrogate_key} <> ?{key_filter}
        ORDER BY {spec.natural_key}, effective_date, {spec.surrogate_key}
    """, params)

    grouped: Dict[str, List[DimensionVersion]] = {}
    for natural_key, sk, effective, expiry, is_current, record_hash in rows:
        grouped.setdefault(natural_key, []).append(
            DimensionVersion(int(sk), effective, expiry, bool(is_current), record_hash)
        )
    return {k: DimensionHistory.from_versions(k, v) for k, v in grouped.items()}


def check_dimension_invariants(conn, spec: DimensionSpec) -> List[str]:
    """Report every uniqueness or contiguity violation in a dimension."""
    if not spec.is_type2:
        rows = conn.fetchall(f"""
            SELECT {spec.natural_key}, COUNT(*) FROM {spec.name}
            GROUP BY {spec.natural_key} HAVING COUNT(*) <> 1
        """)
        return [f"{key}: {count} rows" for key, count in rows]

    problems = []
    for history in load_histories(conn, spec).values():
        problems.extend(history.violations())

    if problems:
        logger.warning(f"{spec.name}: {len(problems)} invariant violations")
    return problems


# ---------------------------------------------------------------------------
# Merge halts
# ---------------------------------------------------------------------------

def is_halted(conn, dimension: str) -> bool:
    row = conn.fetchone("SELECT 1 FROM merge_halts WHERE dimension = ? LIMIT 1", [dimension])
    return row is not None


def ensure_dimension_writable(conn, dimension: str):
    if is_halted(conn, dimension):
        raise MergeInvariantViolation(dimension, "merges halted pending manual repair; call release_dimension")


def halt_dimension(conn, dimension: str, reason: str) -> bool:
    if is_halted(conn, dimension):
        return False
    conn.execute(
        "INSERT INTO merge_halts (dimension, reason, halted_at) VALUES (?, ?, ?)",
        [dimension, reason, datetime.now()]
    )
    logger.error(f"Halted merges on {dimension}: {reason}")
    return True


def release_dimension(conn, dimension: str) -> bool:
    """Operator action after manual repair."""
    if not is_halted(conn, dimension):
        return False
    conn.execute("DELETE FROM merge_halts WHERE dimension = ?", [dimension])
    logger.warning(f"Released merge halt on {dimension}")
    return True


def halt_on_invariant_violation(task_name: str, error: BaseException, conn) -> None:
    """Scheduler failure hook: record a halt when a merge found broken state."""
    if isinstance(error, MergeInvariantViolation):
        halt_dimension(conn, error.dimension, f"{task_name}: {error}")
