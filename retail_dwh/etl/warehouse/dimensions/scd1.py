"""SCD Type 1 merge: overwrite in place, one row per natural key."""

import logging
from datetime import date, datetime
from typing import Iterable

from retail_dwh.cdc.models import ChangeEvent
from retail_dwh.common.exceptions import MergeInvariantViolation
from .definition import DimensionSpec, MergeStats, SCD_TYPE_1, fetch_by_keys
from .invariants import ensure_dimension_writable
from .scd2 import collect_images

logger = logging.getLogger(__name__)


def merge_type1(
    conn,
    spec: DimensionSpec,
    events: Iterable[ChangeEvent],
    processing_date: date
) -> MergeStats:
    """
    Apply a validated change batch to a Type 1 dimension.

    The batch is reduced to the latest image per key. Rows are rewritten only
    when the record hash differs, so applying a batch twice is a no-op.
    """
    if spec.scd_type != SCD_TYPE_1:
        raise ValueError(f"{spec.name} is not a Type 1 dimension")

    ensure_dimension_writable(conn, spec.name)
    stats = MergeStats(spec.name, SCD_TYPE_1, processing_date)

    latest = {key: images[-1] for key, images in collect_images(events, stats).items()}
    if not latest:
        return stats

    existing_rows = fetch_by_keys(conn, spec, f"{spec.natural_key}, {spec.surrogate_key}, record_hash", list(latest))
    existing_map = {}
    for natural_key, sk, record_hash in existing_rows:
        if natural_key in existing_map:
            raise MergeInvariantViolation(spec.name, f"more than one row for {natural_key}")
        existing_map[natural_key] = (sk, record_hash)

    for natural_key, event in latest.items():
        new_hash = spec.record_hash(event.payload)
        attrs = spec.attribute_values(event.payload, processing_date)
        existing = existing_map.get(natural_key)
        now = datetime.now()

        if existing is None:
            sk = spec.mint_key(conn)
            cols = [spec.surrogate_key, spec.natural_key] + list(attrs) + [
                'record_hash', 'source_sequence', 'created_at', 'updated_at'
            ]
            values = [sk, natural_key] + list(attrs.values()) + [new_hash, event.sequence, now, now]
            conn.execute(
                f"INSERT INTO {spec.name} ({', '.join(cols)}) VALUES ({', '.join(['?'] * len(cols))})",
                values
            )
            stats.inserted += 1
        elif existing[1] != new_hash:
            assignments = ', '.join(f"{name} = ?" for name in attrs)
            conn.execute(f"""
                UPDATE {spec.name}
                SET {assignments}, record_hash = ?, source_sequence = ?, updated_at = ?
                WHERE {spec.surrogate_key} = ?
            """, list(attrs.values()) + [new_hash, event.sequence, now, existing[0]])
            stats.updated += 1
        else:
            stats.unchanged += 1

    logger.info(f"{spec.name}: {stats.summary()}")
    return stats
