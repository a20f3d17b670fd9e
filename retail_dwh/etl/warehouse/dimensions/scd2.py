"""
SCD Type 2 merge: expire the current version, append the new one.

History rows are never edited beyond flipping is_current and setting
expiry_date. Events are folded per natural key in source sequence order so
that several changes to one key inside a batch each leave a version.
"""

import logging
from collections import OrderedDict
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List

from retail_dwh.cdc.models import ChangeEvent
from retail_dwh.common.exceptions import MergeInvariantViolation
from .definition import DimensionSpec, MergeStats, SCD_TYPE_2, fetch_by_keys
from .invariants import ensure_dimension_writable

logger = logging.getLogger(__name__)


def collect_images(events: Iterable[ChangeEvent], stats: MergeStats) -> Dict[str, List[ChangeEvent]]:
    """
    Group INSERT images by natural key in sequence order.
    Before-images are dropped; hard deletes are counted and dropped.
    """
    grouped: Dict[str, List[ChangeEvent]] = OrderedDict()
    for event in sorted(events, key=lambda e: e.sequence):
        if event.is_before_image:
            continue
        if event.is_hard_delete:
            stats.deletes_ignored += 1
            logger.info(f"{stats.dimension}: ignoring hard delete of {event.natural_key} (seq={event.sequence})")
            continue
        grouped.setdefault(event.natural_key, []).append(event)
    return grouped


def _check_current_rows(conn, spec: DimensionSpec, keys: List[str]):
    rows = conn.fetchall(f"""
        SELECT {spec.natural_key},
               SUM(CASE WHEN is_current THEN 1 ELSE 0 END) AS current_rows
        FROM {spec.name}
        WHERE {spec.natural_key} IN ({','.join(['?'] * len(keys))})
        GROUP BY {spec.natural_key}
    """, keys)
    for natural_key, current_rows in rows:
        if current_rows != 1:
            raise MergeInvariantViolation(spec.name, f"{current_rows} current rows for {natural_key}")


def _insert_version(conn, spec: DimensionSpec, event: ChangeEvent, record_hash: str, processing_date: date) -> int:
    sk = spec.mint_key(conn)
    attrs = spec.attribute_values(event.payload, processing_date)
    now = datetime.now()
    cols = [spec.surrogate_key, spec.natural_key] + list(attrs) + [
        'record_hash', 'effective_date', 'expiry_date', 'is_current', 'source_sequence', 'created_at', 'updated_at'
    ]
    values = [sk, event.natural_key] + list(attrs.values()) + [
        record_hash, processing_date, None, True, event.sequence, now, now
    ]
    conn.execute(
        f"INSERT INTO {spec.name} ({', '.join(cols)}) VALUES ({', '.join(['?'] * len(cols))})",
        values
    )
    return sk


def merge_type2(
    conn,
    spec: DimensionSpec,
    events: Iterable[ChangeEvent],
    processing_date: date
) -> MergeStats:
    """
    Apply a validated change batch to a Type 2 dimension.

    Runs inside the caller's transaction. The current row of a changed key is
    expired the day before processing_date and a new current row is inserted
    effective processing_date. A version superseded on the day it became
    effective keeps an empty interval.
    """
    if spec.scd_type != SCD_TYPE_2:
        raise ValueError(f"{spec.name} is not a Type 2 dimension")

    ensure_dimension_writable(conn, spec.name)
    stats = MergeStats(spec.name, SCD_TYPE_2, processing_date)

    grouped = collect_images(events, stats)
    if not grouped:
        return stats

    keys = list(grouped)
    _check_current_rows(conn, spec, keys)

    # Batch fetch current versions
    current_rows = fetch_by_keys(
        conn, spec, f"{spec.natural_key}, {spec.surrogate_key}, record_hash, effective_date", keys, current_only=True
    )
    current_map = {row[0]: (row[1], row[2], row[3]) for row in current_rows}
    expiry = processing_date - timedelta(days=1)

    for natural_key, key_events in grouped.items():
        current = current_map.get(natural_key)

        for event in key_events:
            new_hash = spec.record_hash(event.payload)
            if current is not None and current[1] == new_hash:
                stats.unchanged += 1
                continue

            if current is not None:
                current_sk, _, effective = current
                if processing_date < effective:
                    raise MergeInvariantViolation(
                        spec.name,
                        f"processing date {processing_date} precedes current version of {natural_key} "
                        f"effective {effective}"
                    )
                conn.execute(f"""
                    UPDATE {spec.name} SET expiry_date = ?, is_current = FALSE, updated_at = ?
                    WHERE {spec.surrogate_key} = ?
                """, [expiry, datetime.now(), current_sk])
                stats.expired += 1

            sk = _insert_version(conn, spec, event, new_hash, processing_date)
            stats.inserted += 1
            current = (sk, new_hash, processing_date)

    logger.info(f"{spec.name}: {stats.summary()}")
    return stats
