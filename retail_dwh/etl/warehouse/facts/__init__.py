"""Fact loaders."""

from .sales import process_sales_facts, compute_measures, SALES_STREAM, IMMUTABLE_FACT_CHANGE
from .clickstream import process_clickstream_facts, CLICKSTREAM_STREAM
from .degenerate import quarantine_duplicates, DEGENERATE_ID_UNIQUE
from .reconcile import reconcile_late_arriving_keys, FACT_IDENTIFIERS

__all__ = [
    'process_sales_facts', 'compute_measures', 'SALES_STREAM', 'IMMUTABLE_FACT_CHANGE',
    'process_clickstream_facts', 'CLICKSTREAM_STREAM',
    'quarantine_duplicates', 'DEGENERATE_ID_UNIQUE',
    'reconcile_late_arriving_keys', 'FACT_IDENTIFIERS',
]
