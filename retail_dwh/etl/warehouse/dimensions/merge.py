"""
Stream-driven dimension processing: read -> gate -> merge -> advance offset.
"""

import logging
from datetime import date
from typing import Dict, Optional

from retail_dwh.cdc.changelog import ChangeLog
from retail_dwh.quality.gates import QualityGate
from retail_dwh.quality.metrics_logger import MetricsLogger
from retail_dwh.quality.rejects import RejectsSink
from retail_dwh.quality.validators import RecordValidator
from .definition import DimensionSpec, SCD_TYPE_1, SCD_TYPE_2
from .scd1 import merge_type1
from .scd2 import merge_type2

logger = logging.getLogger(__name__)

MERGERS = {
    SCD_TYPE_1: merge_type1,
    SCD_TYPE_2: merge_type2,
}


def process_dimension(
    conn,
    spec: DimensionSpec,
    processing_date: date,
    task_name: Optional[str] = None,
    validator: Optional[RecordValidator] = None
) -> Dict[str, int]:
    """
    Consume the dimension's stream and merge the valid images.

    Everything (rejects, metrics, merge, stats, offset) lands in one
    transaction; a failure anywhere leaves the stream where it was.
    """
    changelog = ChangeLog(conn)
    if not changelog.has_pending(spec.stream_id):
        logger.info(f"{spec.name}: no pending changes on {spec.stream_id}")
        return {'inserted': 0, 'expired': 0, 'updated': 0, 'unchanged': 0, 'deletes_ignored': 0, 'rejected': 0}

    with changelog.consume(spec.stream_id) as window:
        gate = QualityGate(validator, RejectsSink(conn, spec.stream_id, task_name))
        gated = gate.partition(spec.source_relation, window, as_of=processing_date)
        MetricsLogger(conn).log(gated, spec.stream_id, task_name)

        stats = MERGERS[spec.scd_type](conn, spec, gated.valid_events, processing_date)
        stats.persist(conn)

    result = stats.as_dict()
    result['rejected'] = gated.failed
    return result
