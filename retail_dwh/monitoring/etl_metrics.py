"""Task run history - durable TaskRun records and their PostgreSQL export."""

import json
import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

import pandas as pd
import psycopg2
import pytz

from retail_dwh.config import PG_MONITORING_CONN_STRING
from retail_dwh.scheduling.models import TaskRun
from retail_dwh.storage.duckdb_store import Warehouse

logger = logging.getLogger(__name__)

RUN_COLUMNS = [
    'run_id', 'task_name', 'cycle_id', 'attempt', 'scheduled_at', 'started_at', 'finished_at',
    'duration_seconds', 'outcome', 'error_type', 'error_message', 'skip_reason', 'stats',
]


def _naive_utc(moment: Optional[datetime]) -> Optional[datetime]:
    if moment is None or moment.tzinfo is None:
        return moment
    return moment.astimezone(pytz.utc).replace(tzinfo=None)


def run_row(run: TaskRun) -> List[Any]:
    return [
        run.run_id, run.task_name, run.cycle_id, run.attempt,
        _naive_utc(run.scheduled_at), _naive_utc(run.started_at), _naive_utc(run.finished_at),
        run.duration_seconds,
        run.outcome.value if run.outcome else None,
        run.error_type, run.error_message, run.skip_reason,
        json.dumps(run.stats, default=str) if run.stats else None,
    ]


class RunHistory:
    """
    Appends every TaskRun (including SKIPPED ones) to task_run_history.

    Records on its own cursor so that history survives the rollback of the
    attempt it describes.
    """

    def __init__(self, warehouse: Warehouse, exporter: Optional['PostgresMetricsExporter'] = None):
        self.warehouse = warehouse
        self.exporter = exporter
        self._lock = threading.Lock()

    def record(self, run: TaskRun) -> bool:
        placeholders = ', '.join(['?'] * len(RUN_COLUMNS))
        with self._lock:
            conn = self.warehouse.connect()
            try:
                conn.execute(
                    f"INSERT INTO task_run_history ({', '.join(RUN_COLUMNS)}) VALUES ({placeholders})",
                    run_row(run)
                )
            finally:
                conn.close()

        if self.exporter is not None:
            self.exporter.log_run(run)
        return True

    def history(self, task_name: Optional[str] = None, limit: int = 100) -> pd.DataFrame:
        conn = self.warehouse.connect()
        try:
            if task_name:
                return conn.fetchdf(
                    "SELECT * FROM task_run_history WHERE task_name = ? ORDER BY started_at DESC LIMIT ?",
                    [task_name, limit]
                )
            return conn.fetchdf("SELECT * FROM task_run_history ORDER BY started_at DESC LIMIT ?", [limit])
        finally:
            conn.close()

    def outcome_counts(self) -> Dict[str, Dict[str, int]]:
        """{task_name: {outcome: count}}"""
        conn = self.warehouse.connect()
        try:
            rows = conn.fetchall("""
                SELECT task_name, outcome, COUNT(*)
                FROM task_run_history
                GROUP BY task_name, outcome
                ORDER BY task_name, outcome
            """)
        finally:
            conn.close()

        counts: Dict[str, Dict[str, int]] = {}
        for task_name, outcome, count in rows:
            counts.setdefault(task_name, {})[outcome] = count
        return counts


class PostgresMetricsExporter:
    """
    Mirrors task runs and quality metrics into the PostgreSQL monitoring schema.
    Export failures are logged and never fail the task.
    """

    def __init__(self, pg_conn_string: Optional[str] = None):
        self.conn_string = pg_conn_string if pg_conn_string is not None else PG_MONITORING_CONN_STRING

    @property
    def enabled(self) -> bool:
        return bool(self.conn_string)

    def log_run(self, run: TaskRun) -> bool:
        if not self.enabled:
            return False
        try:
            with psycopg2.connect(self.conn_string) as conn:
                with conn.cursor() as cur:
                    cur.execute(f"""
                        INSERT INTO monitoring.task_runs ({', '.join(RUN_COLUMNS)})
                        VALUES ({', '.join(['%s'] * len(RUN_COLUMNS))})
                    """, tuple(run_row(run)))
                conn.commit()
            logger.debug(f"Exported task run {run.run_id} ({run.task_name})")
            return True
        except Exception as e:
            logger.warning(f"Failed to export task run {run.run_id}: {e}")
            return False

    def log_quality_metrics(self, metrics: pd.DataFrame) -> int:
        """Export rows of quality_metrics; returns the number exported."""
        if not self.enabled or metrics.empty:
            return 0
        try:
            rows = [
                (
                    r['relation'], r['stream_id'], r['task_name'], int(r['total_records']),
                    int(r['passed']), int(r['failed']), float(r['pass_rate']), r['gate_status'],
                    r['violations'], r['recorded_at'].to_pydatetime() if hasattr(r['recorded_at'], 'to_pydatetime') else r['recorded_at'],
                )
                for _, r in metrics.iterrows()
            ]
            with psycopg2.connect(self.conn_string) as conn:
                with conn.cursor() as cur:
                    cur.executemany("""
                        INSERT INTO monitoring.quality_metrics (
                            relation, stream_id, task_name, total_records, passed, failed,
                            pass_rate, gate_status, violations, recorded_at
                        ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """, rows)
                conn.commit()
            logger.info(f"Exported {len(rows)} quality metric rows")
            return len(rows)
        except Exception as e:
            logger.warning(f"Failed to export quality metrics: {e}")
            return 0
