"""Quarantine sink for records that fail validation."""

import logging
from datetime import datetime
from typing import Optional

from retail_dwh.cdc.models import ChangeEvent
from retail_dwh.storage.duckdb_store import WarehouseConnection

logger = logging.getLogger(__name__)


class RejectsSink:
    """Writes rejected change events to quality_rejects on the task's connection."""

    def __init__(self, conn: WarehouseConnection, stream_id: Optional[str] = None, task_name: Optional[str] = None):
        self.conn = conn
        self.stream_id = stream_id
        self.task_name = task_name
        self.count = 0

    def quarantine(self, event: ChangeEvent, rule: str, reason: Optional[str]) -> int:
        reject_id = self.conn.fetchone("SELECT nextval('seq_reject_id')")[0]
        self.conn.execute("""
            INSERT INTO quality_rejects (
                reject_id, relation, stream_id, task_name, natural_key, source_sequence,
                rule, reason, payload, quarantined_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [
            reject_id, event.relation, self.stream_id, self.task_name, event.natural_key,
            event.sequence, rule, reason, event.payload.to_json(), datetime.now()
        ])
        self.count += 1
        logger.debug(f"Quarantined {event.relation}/{event.natural_key} seq={event.sequence}: {rule}")
        return reject_id
