"""
fact_sales loader.

Grain: one row per order line, identified by (order_id, order_line_id).
Facts are immutable: an update or delete arriving on stg_sales is quarantined
for an additive correction instead of being applied in place.
"""

import logging
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional

from retail_dwh.cdc.changelog import ChangeLog
from retail_dwh.cdc.models import ChangeKind
from retail_dwh.quality.gates import QualityGate
from retail_dwh.quality.metrics_logger import MetricsLogger
from retail_dwh.quality.rejects import RejectsSink
from retail_dwh.quality.validators import RecordValidator
from ..dimensions import ensure_dates
from ..resolver import SurrogateKeyResolver
from .degenerate import quarantine_duplicates

logger = logging.getLogger(__name__)

SALES_RELATION = 'stg_sales'
SALES_STREAM = 'stg_sales_stream'
IMMUTABLE_FACT_CHANGE = 'immutable_fact_change'

CENT = Decimal('0.01')


def round_half_up(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def compute_measures(unit_price: Decimal, quantity: int, discount_percent: Optional[Decimal]) -> Dict[str, Decimal]:
    """gross = price x qty, discount = gross x pct / 100, net = gross - discount."""
    pct = discount_percent or Decimal('0')
    extended = unit_price * quantity
    gross = round_half_up(extended)
    discount = round_half_up(extended * pct / 100)
    return {
        'gross_amount': gross,
        'discount_amount': discount,
        'net_amount': gross - discount,
    }


def quarantine_fact_changes(events, sink: RejectsSink) -> int:
    """Route updates and deletes on a fact source to the rejects sink."""
    count = 0
    for event in events:
        if event.change_kind == ChangeKind.INSERT or event.is_before_image:
            continue
        reason = 'fact rows are immutable; issue an additive correction'
        if event.is_hard_delete:
            reason = 'fact rows are immutable; deletes must be reversed with a correcting entry'
        sink.quarantine(event, IMMUTABLE_FACT_CHANGE, reason)
        count += 1
    if count:
        logger.warning(f"Quarantined {count} in-place changes to immutable facts")
    return count


def _order_line(payload) -> tuple:
    return (payload.get_str('order_id'), payload.get_int('order_line_id'))


def process_sales_facts(
    conn,
    processing_date: date,
    task_name: Optional[str] = None,
    validator: Optional[RecordValidator] = None
) -> Dict[str, int]:
    """
    Consume stg_sales changes and append fact_sales rows.

    Runs inside the caller's transaction; the stream offset advances with the
    inserted rows or not at all.
    """
    stats = {'inserted': 0, 'rejected': 0, 'duplicates': 0, 'quarantined_changes': 0, 'unresolved_keys': 0}

    changelog = ChangeLog(conn)
    if not changelog.has_pending(SALES_STREAM):
        logger.info("fact_sales: no pending changes")
        return stats

    with changelog.consume(SALES_STREAM) as window:
        events = list(window)
        sink = RejectsSink(conn, SALES_STREAM, task_name)
        stats['quarantined_changes'] = quarantine_fact_changes(events, sink)

        inserts = [e for e in events if e.change_kind == ChangeKind.INSERT]
        gated = QualityGate(validator, sink).partition(SALES_RELATION, inserts, as_of=processing_date)
        MetricsLogger(conn).log(gated, SALES_STREAM, task_name)
        stats['rejected'] = gated.failed

        loadable, stats['duplicates'] = quarantine_duplicates(
            conn, gated.valid_events, sink, 'fact_sales', ('order_id', 'order_line_id'), _order_line
        )
        ensure_dates(conn, [e.payload.get_datetime('transaction_date').date() for e in loadable])

        resolver = SurrogateKeyResolver(conn)
        load_ts = datetime.now()
        rows = []
        for event in loadable:
            p = event.payload
            ident = _order_line(p)
            txn_ts = p.get_datetime('transaction_date')
            txn_date = txn_ts.date()
            measures = compute_measures(p.get_decimal('unit_price'), p.get_int('quantity'), p.get_decimal('discount_percent'))

            rows.append([
                resolver.resolve_date_key(txn_date),
                resolver.lookup('dim_customer', p.get_str('customer_id'), 'fact_sales', ident, 'customer_key', txn_date),
                resolver.lookup('dim_product', p.get_str('product_id'), 'fact_sales', ident, 'product_key', txn_date),
                resolver.lookup('dim_store', p.get_str('store_id'), 'fact_sales', ident, 'store_key', txn_date),
                ident[0],
                ident[1],
                p.get_int('quantity'),
                p.get_decimal('unit_price'),
                p.get_decimal('discount_percent') or Decimal('0'),
                measures['discount_amount'],
                measures['gross_amount'],
                measures['net_amount'],
                txn_ts,
                p.get_str('payment_method'),
                p.get_str('order_status'),
                p.get_str('source_file'),
                event.sequence,
                load_ts,
            ])

        if rows:
            conn.executemany("""
                INSERT INTO fact_sales (
                    date_key, customer_key, product_key, store_key, order_id, order_line_id,
                    quantity, unit_price, discount_percent, discount_amount, gross_amount, net_amount,
                    transaction_timestamp, payment_method, order_status, source_file, source_sequence,
                    load_timestamp
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, rows)
        stats['inserted'] = len(rows)
        stats['unresolved_keys'] = resolver.misses

    logger.info(
        f"fact_sales: inserted={stats['inserted']}, rejected={stats['rejected']}, duplicates={stats['duplicates']}, "
        f"quarantined_changes={stats['quarantined_changes']}, unresolved_keys={stats['unresolved_keys']}"
    )
    return stats
