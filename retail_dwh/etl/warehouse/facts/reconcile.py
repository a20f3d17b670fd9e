"""
Late-arriving dimension reconciliation.

Facts loaded against the unknown member are repointed once the dimension
member exists: to the version effective on the fact's date, or the earliest
version when the member only appeared later. This is the only update ever
applied to a fact row.
"""

import json
import logging
from datetime import datetime
from typing import Dict

from ..resolver import SurrogateKeyResolver
from ..dimensions import UNKNOWN_MEMBER_KEY

logger = logging.getLogger(__name__)

FACT_IDENTIFIERS = {
    'fact_sales': ('order_id', 'order_line_id'),
    'fact_clickstream': ('event_id',),
}


def reconcile_late_arriving_keys(conn, resolver: SurrogateKeyResolver = None) -> Dict[str, int]:
    """Repoint sentinel keys whose dimension member has since arrived."""
    stats = {'pending': 0, 'resolved': 0, 'still_missing': 0}
    resolver = resolver or SurrogateKeyResolver(conn)

    pending = conn.fetchall("""
        SELECT fact_table, degenerate_id, dimension, key_column, natural_key, reference_date
        FROM reconciliation_log
        WHERE resolved_key IS NULL
        ORDER BY first_seen_at
    """)
    stats['pending'] = len(pending)

    for fact_table, degenerate_id, dimension, key_column, natural_key, reference_date in pending:
        key = None
        if reference_date is not None:
            key = resolver.resolve_as_of(dimension, natural_key, reference_date)
        if key is None:
            key = resolver.earliest_version(dimension, natural_key)
        if key is None:
            stats['still_missing'] += 1
            continue

        id_columns = FACT_IDENTIFIERS[fact_table]
        id_values = json.loads(degenerate_id)
        where = ' AND '.join(f"{col} = ?" for col in id_columns)
        conn.execute(f"""
            UPDATE {fact_table} SET {key_column} = ?
            WHERE {where} AND {key_column} = ?
        """, [key] + id_values + [UNKNOWN_MEMBER_KEY])

        conn.execute("""
            UPDATE reconciliation_log SET resolved_key = ?, resolved_at = ?
            WHERE fact_table = ? AND degenerate_id = ? AND key_column = ? AND resolved_key IS NULL
        """, [key, datetime.now(), fact_table, degenerate_id, key_column])
        stats['resolved'] += 1

    if stats['pending']:
        logger.info(
            f"Reconciliation: pending={stats['pending']}, resolved={stats['resolved']}, "
            f"still_missing={stats['still_missing']}"
        )
    return stats
