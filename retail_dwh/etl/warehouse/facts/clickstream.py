"""
fact_clickstream loader.

Grain: one row per click event (event_id). The source stream is append-only,
so only fresh inserts ever reach this loader. Anonymous visitors carry no
customer_id and load against the unknown member without a reconciliation
entry.
"""

import logging
from datetime import date, datetime
from typing import Dict, Optional

from retail_dwh.cdc.changelog import ChangeLog
from retail_dwh.quality.gates import QualityGate
from retail_dwh.quality.metrics_logger import MetricsLogger
from retail_dwh.quality.rejects import RejectsSink
from retail_dwh.quality.validators import RecordValidator
from ..dimensions import ensure_dates
from ..resolver import SurrogateKeyResolver
from .degenerate import quarantine_duplicates

logger = logging.getLogger(__name__)

CLICKSTREAM_RELATION = 'stg_clickstream'
CLICKSTREAM_STREAM = 'stg_clickstream_stream'


def _event_id(payload) -> tuple:
    return (payload.get_str('event_id'),)


def process_clickstream_facts(
    conn,
    processing_date: date,
    task_name: Optional[str] = None,
    validator: Optional[RecordValidator] = None
) -> Dict[str, int]:
    """Consume the append-only clickstream stream and append fact_clickstream rows."""
    stats = {'inserted': 0, 'rejected': 0, 'duplicates': 0, 'unresolved_keys': 0}

    changelog = ChangeLog(conn)
    if not changelog.has_pending(CLICKSTREAM_STREAM):
        logger.info("fact_clickstream: no pending changes")
        return stats

    with changelog.consume(CLICKSTREAM_STREAM) as window:
        sink = RejectsSink(conn, CLICKSTREAM_STREAM, task_name)
        gated = QualityGate(validator, sink).partition(CLICKSTREAM_RELATION, window, as_of=processing_date)
        MetricsLogger(conn).log(gated, CLICKSTREAM_STREAM, task_name)
        stats['rejected'] = gated.failed

        events, stats['duplicates'] = quarantine_duplicates(
            conn, gated.valid_events, sink, 'fact_clickstream', ('event_id',), _event_id
        )
        ensure_dates(conn, [e.payload.get_datetime('event_timestamp').date() for e in events])

        resolver = SurrogateKeyResolver(conn)
        load_ts = datetime.now()
        rows = []
        for event in events:
            p = event.payload
            event_id = p.get_str('event_id')
            event_ts = p.get_datetime('event_timestamp')
            event_date = event_ts.date()
            ident = (event_id,)

            rows.append([
                event_id,
                resolver.resolve_date_key(event_date),
                resolver.lookup('dim_customer', p.get_str('customer_id'), 'fact_clickstream', ident, 'customer_key', event_date),
                resolver.lookup('dim_product', p.get_str('product_id'), 'fact_clickstream', ident, 'product_key', event_date),
                p.get_str('session_id'),
                event_ts,
                p.get_str('event_type'),
                p.get_str('page_url'),
                p.get_str('device_type'),
                p.get_int('duration_seconds'),
                p.get_str('order_id'),
                p.get_decimal('order_value'),
                event.sequence,
                load_ts,
            ])

        if rows:
            conn.executemany("""
                INSERT INTO fact_clickstream (
                    event_id, date_key, customer_key, product_key, session_id, event_timestamp,
                    event_type, page_url, device_type, duration_seconds, order_id, order_value,
                    source_sequence, load_timestamp
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, rows)
        stats['inserted'] = len(rows)
        stats['unresolved_keys'] = resolver.misses

    logger.info(
        f"fact_clickstream: inserted={stats['inserted']}, rejected={stats['rejected']}, duplicates={stats['duplicates']}, "
        f"unresolved_keys={stats['unresolved_keys']}"
    )
    return stats
