"""
Surrogate key resolution.

Lookups are cached per dimension on first use (natural key -> surrogate key of
the current version). A miss on the fact path is not fatal: it returns the
unknown member key, warns, and leaves a reconciliation_log row so the fact can
be repointed once the late dimension member arrives.
"""

import json
import logging
import warnings
from datetime import date, datetime
from typing import Dict, Optional, Sequence

from retail_dwh.common.exceptions import UnresolvedReferenceWarning
from .dimensions import DIMENSIONS, DimensionSpec, UNKNOWN_MEMBER_KEY, date_key

logger = logging.getLogger(__name__)


class SurrogateKeyResolver:
    """Read-only key lookups against current dimension state."""

    def __init__(self, conn, dimensions: Dict[str, DimensionSpec] = None):
        self.conn = conn
        self.dimensions = dimensions or DIMENSIONS
        self._caches: Dict[str, Dict[str, int]] = {}
        self.misses = 0

    def _spec(self, dimension: str) -> DimensionSpec:
        try:
            return self.dimensions[dimension]
        except KeyError:
            raise ValueError(f"Unknown dimension {dimension}")

    def _cache(self, dimension: str) -> Dict[str, int]:
        if dimension not in self._caches:
            spec = self._spec(dimension)
            current_filter = 'AND is_current = TRUE' if spec.is_type2 else ''
            df = self.conn.fetchdf(f"""
                SELECT {spec.natural_key}, {spec.surrogate_key} FROM {spec.name}
                WHERE {spec.surrogate_key} <> ? {current_filter}
            """, [UNKNOWN_MEMBER_KEY])
            self._caches[dimension] = dict(zip(df[spec.natural_key].astype(str), df[spec.surrogate_key].astype(int)))
            logger.debug(f"Cache initialized: {dimension}={len(self._caches[dimension])}")
        return self._caches[dimension]

    def invalidate(self, dimension: Optional[str] = None):
        if dimension is None:
            self._caches.clear()
        else:
            self._caches.pop(dimension, None)

    def resolve(self, dimension: str, natural_key: Optional[str]) -> Optional[int]:
        """Current surrogate key, or None when the member does not exist."""
        if natural_key is None:
            return None
        key = self._cache(dimension).get(str(natural_key))
        return int(key) if key is not None else None

    def resolve_as_of(self, dimension: str, natural_key: Optional[str], as_of: date) -> Optional[int]:
        """Surrogate key of the version effective on as_of (current key for Type 1)."""
        spec = self._spec(dimension)
        if not spec.is_type2:
            return self.resolve(dimension, natural_key)
        if natural_key is None:
            return None

        row = self.conn.fetchone(f"""
            SELECT {spec.surrogate_key} FROM {spec.name}
            WHERE {spec.natural_key} = ?
              AND effective_date <= ?
              AND (expiry_date IS NULL OR expiry_date >= ?)
              AND (expiry_date IS NULL OR expiry_date >= effective_date)
            ORDER BY effective_date DESC, {spec.surrogate_key} DESC
            LIMIT 1
        """, [str(natural_key), as_of, as_of])
        return int(row[0]) if row else None

    def earliest_version(self, dimension: str, natural_key: str) -> Optional[int]:
        spec = self._spec(dimension)
        row = self.conn.fetchone(f"""
            SELECT {spec.surrogate_key} FROM {spec.name}
            WHERE {spec.natural_key} = ? AND {spec.surrogate_key} <> ?
            ORDER BY {'effective_date, ' if spec.is_type2 else ''}{spec.surrogate_key}
            LIMIT 1
        """, [str(natural_key), UNKNOWN_MEMBER_KEY])
        return int(row[0]) if row else None

    def lookup(
        self,
        dimension: str,
        natural_key: Optional[str],
        fact_table: str,
        degenerate_id: Sequence,
        key_column: str,
        reference_date: Optional[date] = None
    ) -> int:
        """
        Fact-path lookup. A missing member yields the unknown member key and a
        reconciliation_log row; a null reference yields the unknown member key
        without one.
        """
        if natural_key is None:
            return UNKNOWN_MEMBER_KEY

        key = self.resolve(dimension, natural_key)
        if key is not None:
            return key

        self.misses += 1
        message = (
            f"{fact_table} {list(degenerate_id)}: {dimension} member {natural_key!r} not found, "
            f"loading {key_column}={UNKNOWN_MEMBER_KEY}"
        )
        logger.warning(message)
        warnings.warn(message, UnresolvedReferenceWarning, stacklevel=2)

        self.conn.execute("""
            INSERT INTO reconciliation_log (
                fact_table, degenerate_id, dimension, key_column, natural_key,
                reference_date, first_seen_at, resolved_key, resolved_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, NULL, NULL)
        """, [
            fact_table, json.dumps(list(degenerate_id)), dimension, key_column,
            str(natural_key), reference_date, datetime.now()
        ])
        return UNKNOWN_MEMBER_KEY

    @staticmethod
    def resolve_date_key(value) -> Optional[int]:
        if value is None:
            return None
        return date_key(value)
