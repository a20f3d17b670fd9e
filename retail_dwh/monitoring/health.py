"""Health Check - warehouse, CDC streams, dimension invariants and MinIO."""

import logging
import signal
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

import psycopg2

from retail_dwh.cdc.changelog import ChangeLog
from retail_dwh.config import PG_MONITORING_CONN_STRING
from retail_dwh.etl.warehouse.dimensions import DIMENSIONS, check_dimension_invariants
from retail_dwh.storage.duckdb_store import Warehouse
from retail_dwh.storage.minio import BACKUP_BUCKET, DUCKDB_OBJECT, WAREHOUSE_BUCKET, get_minio_client

logger = logging.getLogger(__name__)

TIMEOUT_SECONDS = 10


@contextmanager
def timeout(seconds: int):
    """SIGALRM guard for network checks; a no-op off the main thread."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handler(signum, frame):
        raise TimeoutError(f"Operation timed out after {seconds}s")

    old_handler = signal.signal(signal.SIGALRM, handler)
    signal.alarm(seconds)
    try:
        yield
    finally:
        signal.alarm(0)
        signal.signal(signal.SIGALRM, old_handler)


class HealthChecker:
    """Check health of the warehouse and its collaborators."""

    def __init__(self, warehouse: Warehouse, minio_client=None, pg_conn_string: Optional[str] = None, dimensions: Iterable = None):
        self.warehouse = warehouse
        self._minio_client = minio_client
        self.pg_conn = pg_conn_string if pg_conn_string is not None else PG_MONITORING_CONN_STRING
        self.dimensions = list(dimensions) if dimensions is not None else list(DIMENSIONS.values())

    def check_duckdb(self) -> Dict[str, Any]:
        try:
            conn = self.warehouse.connect()
            try:
                version = conn.fetchone("SELECT version()")[0]
                sales = conn.fetchone("SELECT COUNT(*) FROM fact_sales")[0]
                clicks = conn.fetchone("SELECT COUNT(*) FROM fact_clickstream")[0]
            finally:
                conn.close()
            return {'status': 'healthy', 'version': version, 'fact_sales': sales, 'fact_clickstream': clicks}
        except Exception as e:
            logger.error(f"DuckDB health check failed: {e}")
            return {'status': 'unhealthy', 'error': str(e)}

    def check_streams(self) -> Dict[str, Any]:
        """Stale streams need a manual rebuild, so they make the warehouse unhealthy."""
        try:
            conn = self.warehouse.connect()
            try:
                status = ChangeLog(conn).stream_status()
            finally:
                conn.close()

            stale = status.loc[status['stale'], 'stream_id'].tolist() if not status.empty else []
            pending = {r['stream_id']: int(r['pending']) for _, r in status.iterrows()}
            return {
                'status': 'unhealthy' if stale else 'healthy',
                'streams': len(status),
                'stale': stale,
                'pending': pending,
            }
        except Exception as e:
            logger.error(f"Stream health check failed: {e}")
            return {'status': 'unhealthy', 'error': str(e)}

    def check_dimensions(self) -> Dict[str, Any]:
        try:
            conn = self.warehouse.connect()
            try:
                halted = [r[0] for r in conn.fetchall("SELECT DISTINCT dimension FROM merge_halts ORDER BY 1")]
                violations = {}
                for spec in self.dimensions:
                    problems = check_dimension_invariants(conn, spec)
                    if problems:
                        violations[spec.name] = problems[:10]
            finally:
                conn.close()

            status = 'healthy'
            if halted or violations:
                status = 'unhealthy'
            return {'status': status, 'halted': halted, 'violations': violations}
        except Exception as e:
            logger.error(f"Dimension health check failed: {e}")
            return {'status': 'unhealthy', 'error': str(e)}

    def check_minio(self) -> Dict[str, Any]:
        try:
            with timeout(TIMEOUT_SECONDS):
                client = self._minio_client or get_minio_client()
                buckets = [b.name for b in client.list_buckets()]
                dwh_exists = WAREHOUSE_BUCKET in buckets

                size_mb = None
                if dwh_exists:
                    try:
                        stat = client.stat_object(WAREHOUSE_BUCKET, DUCKDB_OBJECT)
                        size_mb = round(stat.size / 1024 / 1024, 2)
                    except Exception as e:
                        logger.warning(f"Warehouse object missing on MinIO: {e}")

                status = 'healthy'
                if not dwh_exists or BACKUP_BUCKET not in buckets or size_mb is None:
                    status = 'degraded'
                return {'status': status, 'buckets': buckets, 'warehouse_size_mb': size_mb}
        except TimeoutError:
            logger.error("MinIO health check timed out")
            return {'status': 'unhealthy', 'error': 'Connection timeout'}
        except Exception as e:
            logger.error(f"MinIO health check failed: {e}")
            return {'status': 'unhealthy', 'error': str(e)}

    def check_postgres(self) -> Dict[str, Any]:
        """Monitoring export is optional: failures only degrade."""
        if not self.pg_conn:
            return {'status': 'healthy', 'enabled': False}
        try:
            with timeout(TIMEOUT_SECONDS):
                with psycopg2.connect(self.pg_conn, connect_timeout=5) as conn:
                    with conn.cursor() as cur:
                        cur.execute("SELECT COUNT(*) FROM monitoring.task_runs")
                        runs = cur.fetchone()[0]
                return {'status': 'healthy', 'enabled': True, 'task_runs': runs}
        except TimeoutError:
            logger.warning("PostgreSQL health check timed out")
            return {'status': 'degraded', 'error': 'Connection timeout'}
        except Exception as e:
            logger.warning(f"PostgreSQL health check failed: {e}")
            return {'status': 'degraded', 'error': str(e)}

    def check_all(self, include_remote: bool = True) -> Dict[str, Any]:
        services = {
            'duckdb': self.check_duckdb(),
            'streams': self.check_streams(),
            'dimensions': self.check_dimensions(),
        }
        if include_remote:
            services['minio'] = self.check_minio()
            services['postgres'] = self.check_postgres()

        result = {'timestamp': datetime.now().isoformat(), 'services': services}

        # unhealthy > degraded > healthy
        statuses = [s.get('status') for s in services.values()]
        if 'unhealthy' in statuses:
            result['overall'] = 'unhealthy'
        elif 'degraded' in statuses:
            result['overall'] = 'degraded'
        else:
            result['overall'] = 'healthy'
        return result
