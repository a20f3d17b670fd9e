"""Metrics Logger - Log quality gate metrics to the quality_metrics table."""

import json
import logging
from datetime import datetime
from typing import Optional

from retail_dwh.storage.duckdb_store import WarehouseConnection
from .gates import GateResult

logger = logging.getLogger(__name__)


class MetricsLogger:
    """Logger for gate pass/fail counts, written inside the task transaction."""

    def __init__(self, conn: WarehouseConnection):
        self.conn = conn

    def log(self, result: GateResult, stream_id: Optional[str] = None, task_name: Optional[str] = None) -> bool:
        if result.total == 0:
            return False

        self.conn.execute("""
            INSERT INTO quality_metrics (
                relation, stream_id, task_name, total_records, passed, failed,
                pass_rate, gate_status, violations, recorded_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [
            result.relation, stream_id, task_name, result.total, result.passed, result.failed,
            result.pass_rate, result.status, json.dumps(result.violations, sort_keys=True), datetime.now()
        ])
        return True
