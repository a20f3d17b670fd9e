"""
Degenerate identifier uniqueness for append-only facts.

The first event carrying an identifier loads; later events with the same
identifier, and events whose identifier is already in the fact table, go to
quality_rejects under degenerate_id_unique.
"""

import logging
from typing import Callable, Iterable, List, Sequence, Set, Tuple

from retail_dwh.cdc.models import ChangeEvent
from retail_dwh.common.attributes import AttributeBag
from retail_dwh.common.exceptions import DuplicateFactError
from retail_dwh.quality.rejects import RejectsSink

logger = logging.getLogger(__name__)

DEGENERATE_ID_UNIQUE = 'degenerate_id_unique'


def loaded_identifiers(conn, fact_table: str, id_columns: Sequence[str], identifiers: Iterable[tuple]) -> Set[tuple]:
    """Subset of identifiers already present in the fact table."""
    wanted = set(identifiers)
    leading = sorted({ident[0] for ident in wanted})
    if not leading:
        return set()
    placeholders = ','.join(['?'] * len(leading))
    rows = conn.fetchall(f"""
        SELECT {', '.join(id_columns)} FROM {fact_table} WHERE {id_columns[0]} IN ({placeholders})
    """, leading)
    return wanted.intersection(tuple(row) for row in rows)


def check_identifier(fact_table: str, identifier: tuple, seen: Set[tuple], loaded: Set[tuple]):
    if identifier in loaded:
        raise DuplicateFactError(fact_table, identifier, 'already loaded')
    if identifier in seen:
        raise DuplicateFactError(fact_table, identifier, 'repeated within the batch')


def quarantine_duplicates(
    conn,
    events: List[ChangeEvent],
    sink: RejectsSink,
    fact_table: str,
    id_columns: Sequence[str],
    identifier_of: Callable[[AttributeBag], tuple]
) -> Tuple[List[ChangeEvent], int]:
    """Split events into loadable ones and quarantined duplicates."""
    identifiers = [identifier_of(e.payload) for e in events]
    loaded = loaded_identifiers(conn, fact_table, id_columns, identifiers)

    kept = []
    seen: Set[tuple] = set()
    for event, identifier in zip(events, identifiers):
        try:
            check_identifier(fact_table, identifier, seen, loaded)
        except DuplicateFactError as e:
            sink.quarantine(event, e.rule, e.reason)
            continue
        seen.add(identifier)
        kept.append(event)

    duplicates = len(events) - len(kept)
    if duplicates:
        logger.warning(f"{fact_table}: quarantined {duplicates} events with duplicate identifiers")
    return kept, duplicates
