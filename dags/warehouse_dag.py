"""
Retail Warehouse DAG - one scheduler cycle per hour
Schedule: Hourly

Flow:
1. Run one warehouse cycle (download DuckDB from MinIO, back it up,
   run the task graph, export Parquet, upload DuckDB)
2. Health check of the refreshed warehouse (streams, dimension invariants)

The in-process scheduler owns task ordering, retries and timeouts; Airflow
only provides the heartbeat and the object storage sync.
"""
from datetime import datetime, timedelta
from airflow import DAG
from airflow.operators.python import PythonOperator
from airflow.operators.empty import EmptyOperator
import logging
import sys

sys.path.insert(0, '/opt/airflow')

logger = logging.getLogger(__name__)

default_args = {
    'owner': 'airflow',
    'depends_on_past': False,
    'retries': 1,
    'retry_delay': timedelta(minutes=5),
    'email_on_failure': False,
}


def warehouse_cycle_task(**kwargs):
    """Run one warehouse cycle against the MinIO-backed DuckDB file"""
    from retail_dwh.etl.warehouse import run_etl

    result = run_etl(use_minio=True)
    logger.info(f"Warehouse cycle: {result.get('outcomes')}")
    if not result['success']:
        raise Exception(f"Warehouse cycle failed: {result.get('message')}")
    return {'cycle_id': result.get('cycle_id'), 'outcomes': result.get('outcomes')}


def health_check_task(**kwargs):
    """Check streams, dimension invariants and MinIO after the cycle"""
    from retail_dwh.config import WAREHOUSE_CONFIG
    from retail_dwh.monitoring import HealthChecker
    from retail_dwh.storage import Warehouse, download_warehouse

    db_path = download_warehouse(WAREHOUSE_CONFIG['duckdb_path'])
    with Warehouse(db_path) as warehouse:
        result = HealthChecker(warehouse).check_all()

    logger.info(f"Warehouse health: {result['overall']}")
    for name, status in result['services'].items():
        logger.info(f"  {name}: {status.get('status')}")

    if result['overall'] == 'unhealthy':
        raise Exception(f"Warehouse unhealthy: {result['services']}")
    return result['overall']


with DAG(
    'retail_warehouse',
    default_args=default_args,
    description='Hourly incremental maintenance of the retail star schema',
    schedule_interval='0 * * * *',
    start_date=datetime(2024, 1, 1),
    catchup=False,
    tags=['production', 'warehouse', 'etl'],
    max_active_runs=1,
) as dag:

    start = EmptyOperator(task_id='start')

    warehouse_cycle = PythonOperator(
        task_id='warehouse_cycle',
        python_callable=warehouse_cycle_task,
    )

    health_check = PythonOperator(
        task_id='health_check',
        python_callable=health_check_task,
    )

    end = EmptyOperator(task_id='end')

    start >> warehouse_cycle >> health_check >> end
