"""
ETL Pipeline: change streams to the retail star schema.

Declares the warehouse task graph and wires it to the scheduler:

    etl_root (cron)
      -> load_dim_customer, load_dim_product, load_dim_store
      -> load_fact_sales (all three dims), load_fact_clickstream (customer, product)
      -> reconcile_late_arriving_keys
      -> data_quality_check
"""

import argparse
import json
import logging
import os
import threading
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

from retail_dwh.cdc import ChangeLog
from retail_dwh.config import SCHEDULER_CONFIG, WAREHOUSE_CONFIG
from retail_dwh.monitoring.etl_metrics import PostgresMetricsExporter, RunHistory
from retail_dwh.quality.warehouse_checks import run_warehouse_checks
from retail_dwh.scheduling import Scheduler, TaskConfig, TaskContext, TaskGraph
from retail_dwh.storage.duckdb_store import Warehouse
from retail_dwh.storage.minio import backup_warehouse, download_warehouse, export_parquet, upload_warehouse
from .dimensions import (
    DIM_CUSTOMER, DIM_PRODUCT, DIM_STORE, DIMENSIONS,
    halt_on_invariant_violation, process_dim_customer, process_dim_date,
    process_dim_product, process_dim_store
)
from .facts import (
    CLICKSTREAM_STREAM, SALES_STREAM,
    process_clickstream_facts, process_sales_facts, reconcile_late_arriving_keys
)
from .facts.clickstream import CLICKSTREAM_RELATION
from .facts.sales import SALES_RELATION

logger = logging.getLogger(__name__)

ROOT_TASK = 'etl_root'
TRANSFORM_POOL = 'TRANSFORM_WH'

# (relation, stream_id, append_only)
STREAMS = [
    (DIM_CUSTOMER.source_relation, DIM_CUSTOMER.stream_id, False),
    (DIM_PRODUCT.source_relation, DIM_PRODUCT.stream_id, False),
    (DIM_STORE.source_relation, DIM_STORE.stream_id, False),
    (SALES_RELATION, SALES_STREAM, False),
    (CLICKSTREAM_RELATION, CLICKSTREAM_STREAM, True),
]


def bootstrap_warehouse(warehouse: Warehouse) -> Dict[str, Any]:
    """Create the schema, track the staging relations and open their streams."""
    warehouse.setup(DIMENSIONS.values())

    conn = warehouse.connect()
    try:
        changelog = ChangeLog(conn)
        with conn.transaction():
            tracked = [relation for relation, _, _ in STREAMS if changelog.track(relation)]
            for relation, stream_id, append_only in STREAMS:
                changelog.create_stream(stream_id, relation, append_only=append_only)
    finally:
        conn.close()

    logger.info(f"Warehouse bootstrapped: newly tracked={tracked}, streams={[s for _, s, _ in STREAMS]}")
    return {'tracked': tracked, 'streams': [s for _, s, _ in STREAMS]}


# =============================================================================
# Task bodies
# =============================================================================

def root_task(ctx: TaskContext) -> Dict[str, Any]:
    """Extend the calendar and apply CDC retention before the cycle's loads."""
    return {
        'dim_date': process_dim_date(ctx.conn, ctx.processing_date),
        'retention': ChangeLog(ctx.conn).enforce_retention(),
    }


def _dimension_task(processor: Callable) -> Callable[[TaskContext], Dict[str, int]]:
    def body(ctx: TaskContext) -> Dict[str, int]:
        return processor(ctx.conn, ctx.processing_date, task_name=ctx.task_name)
    body.__name__ = processor.__name__
    return body


def fact_sales_task(ctx: TaskContext) -> Dict[str, int]:
    return process_sales_facts(ctx.conn, ctx.processing_date, task_name=ctx.task_name)


def fact_clickstream_task(ctx: TaskContext) -> Dict[str, int]:
    return process_clickstream_facts(ctx.conn, ctx.processing_date, task_name=ctx.task_name)


def reconcile_task(ctx: TaskContext) -> Dict[str, int]:
    return reconcile_late_arriving_keys(ctx.conn)


def data_quality_task(ctx: TaskContext) -> Dict[str, Any]:
    results = run_warehouse_checks(ctx.conn, DIMENSIONS.values())
    summary = {'passed': 0, 'warning': 0, 'failed': 0}
    for r in results:
        summary[{'PASS': 'passed', 'WARNING': 'warning'}.get(r.status, 'failed')] += 1
    return summary


def build_task_graph(
    schedule: Optional[str] = None,
    retry_policy: Optional[Dict[str, Any]] = None,
    timeout_seconds: Optional[float] = None
) -> TaskGraph:
    """The warehouse task graph. Every non-root task shares retry and timeout settings."""
    common: Dict[str, Any] = {'resource_binding': TRANSFORM_POOL}
    if retry_policy is not None:
        common['retry_policy'] = retry_policy
    if timeout_seconds is not None:
        common['timeout_seconds'] = timeout_seconds

    dim_tasks = [
        ('load_dim_customer', process_dim_customer, DIM_CUSTOMER.name),
        ('load_dim_product', process_dim_product, DIM_PRODUCT.name),
        ('load_dim_store', process_dim_store, DIM_STORE.name),
    ]

    tasks: List[TaskConfig] = [
        TaskConfig.from_options(ROOT_TASK, root_task, dict(
            common, schedule=schedule or SCHEDULER_CONFIG['root_schedule'], targets=['dim_date'],
        )),
    ]
    for name, processor, table in dim_tasks:
        tasks.append(TaskConfig.from_options(name, _dimension_task(processor), dict(
            common, predecessors=[ROOT_TASK], targets=[table], on_failure=[halt_on_invariant_violation],
        )))

    tasks.extend([
        TaskConfig.from_options('load_fact_sales', fact_sales_task, dict(
            common, predecessors=[name for name, _, _ in dim_tasks], targets=['fact_sales', 'dim_date'],
        )),
        TaskConfig.from_options('load_fact_clickstream', fact_clickstream_task, dict(
            common, predecessors=['load_dim_customer', 'load_dim_product'], targets=['fact_clickstream', 'dim_date'],
        )),
        TaskConfig.from_options('reconcile_late_arriving_keys', reconcile_task, dict(
            common, predecessors=['load_fact_sales', 'load_fact_clickstream'],
            targets=['fact_sales', 'fact_clickstream'],
        )),
        TaskConfig.from_options('data_quality_check', data_quality_task, dict(
            common, predecessors=['reconcile_late_arriving_keys'],
        )),
    ])
    return TaskGraph(tasks).validate()


def create_scheduler(
    warehouse: Warehouse,
    graph: Optional[TaskGraph] = None,
    record_history: bool = True,
    **kwargs
) -> Scheduler:
    history = RunHistory(warehouse, PostgresMetricsExporter()) if record_history else None
    return Scheduler(warehouse, graph or build_task_graph(), history=history, **kwargs)


def run_etl(
    db_path: Optional[str] = None,
    processing_date: Optional[date] = None,
    use_minio: bool = False
) -> Dict[str, Any]:
    """
    Run one full warehouse cycle.

    Flow:
    1. Download DuckDB from MinIO (or create new) and back it up
    2. Bootstrap schema and streams
    3. Resume the task graph and run one cycle
    4. Export Parquet and upload DuckDB back to MinIO
    """
    start_time = datetime.now()
    result: Dict[str, Any] = {'success': False, 'start_time': start_time.isoformat(), 'stats': {}}
    db_path = db_path or WAREHOUSE_CONFIG['duckdb_path']

    logger.info("=" * 60)
    logger.info(f"ETL START: {start_time}")
    logger.info("=" * 60)

    try:
        if use_minio:
            download_warehouse(db_path)
            result['backup_object'] = backup_warehouse(db_path)

        with Warehouse(db_path) as warehouse:
            bootstrap_warehouse(warehouse)
            scheduler = create_scheduler(warehouse)
            try:
                scheduler.resume_graph(ROOT_TASK)
                cycle = scheduler.trigger(ROOT_TASK, processing_date=processing_date)
            finally:
                scheduler.shutdown()

            result['cycle_id'] = cycle.cycle_id
            result['processing_date'] = cycle.processing_date.isoformat()
            result['outcomes'] = cycle.summary()
            result['stats'] = {r.task_name: r.stats for r in cycle.runs if r.stats}
            result['success'] = cycle.succeeded

            if use_minio and cycle.succeeded:
                conn = warehouse.connect()
                try:
                    result['stats']['parquet_export'] = export_parquet(conn, cycle.processing_date)
                finally:
                    conn.close()
            warehouse.checkpoint()

        if use_minio:
            upload_warehouse(db_path)

        result['message'] = 'ETL completed successfully' if result['success'] else 'ETL cycle had failed tasks'

    except Exception as e:
        logger.error(f"ETL failed: {e}", exc_info=True)
        result['message'] = str(e)

    finally:
        end_time = datetime.now()
        result['end_time'] = end_time.isoformat()
        result['duration_seconds'] = (end_time - start_time).total_seconds()

        logger.info("=" * 60)
        logger.info(f"ETL END: Duration {result['duration_seconds']:.2f}s")
        logger.info(f"Status: {'SUCCESS' if result['success'] else 'FAILED'}")
        logger.info("=" * 60)

    return result


def run_scheduler_loop(db_path: Optional[str] = None, stop_event: Optional[threading.Event] = None):
    """Long-running mode: fire the root on its cron schedule until stopped."""
    stop_event = stop_event or threading.Event()
    with Warehouse(db_path) as warehouse:
        bootstrap_warehouse(warehouse)
        scheduler = create_scheduler(warehouse)
        scheduler.resume_graph(ROOT_TASK)
        try:
            scheduler.run_forever(stop_event)
        except KeyboardInterrupt:
            logger.info("Interrupted, stopping scheduler")
        finally:
            scheduler.shutdown()


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(description="Retail warehouse ETL")
    parser.add_argument('--db-path', default=os.getenv('DWH_DUCKDB_PATH', WAREHOUSE_CONFIG['duckdb_path']))
    parser.add_argument('--processing-date', type=date.fromisoformat, default=None)
    parser.add_argument('--use-minio', action='store_true', help='sync the warehouse file with MinIO')
    parser.add_argument('--loop', action='store_true', help='run the cron scheduler until interrupted')
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    if args.loop:
        run_scheduler_loop(args.db_path)
        return 0

    result = run_etl(args.db_path, processing_date=args.processing_date, use_minio=args.use_minio)
    print(json.dumps(result, indent=2, default=str))
    return 0 if result['success'] else 1


if __name__ == "__main__":
    raise SystemExit(main())
