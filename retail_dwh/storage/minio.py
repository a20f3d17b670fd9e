"""
MinIO storage operations.

Buckets:
- retail-warehouse: warehouse DuckDB file + Parquet exports
- retail-backup: timestamped DuckDB backups
"""

import logging
import os
import tempfile
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional

from minio import Minio
from minio.error import S3Error

from retail_dwh.config import BACKUP_RETENTION_COUNT, MINIO_CONFIG, WAREHOUSE_CONFIG

logger = logging.getLogger(__name__)

WAREHOUSE_BUCKET = MINIO_CONFIG["warehouse_bucket"]
BACKUP_BUCKET = MINIO_CONFIG["backup_bucket"]
ALL_BUCKETS = [WAREHOUSE_BUCKET, BACKUP_BUCKET]

DUCKDB_OBJECT = 'dwh/retail.duckdb'
PARQUET_PREFIX = 'parquet'
BACKUP_PREFIX = 'dwh_backups'

EXPORT_TABLES = ['dim_customer', 'dim_product', 'dim_store', 'dim_date', 'fact_sales', 'fact_clickstream']


def get_minio_client() -> Minio:
    """Get MinIO client."""
    return Minio(
        MINIO_CONFIG["endpoint"],
        access_key=MINIO_CONFIG["access_key"],
        secret_key=MINIO_CONFIG["secret_key"],
        secure=MINIO_CONFIG["secure"]
    )


def _ensure_bucket(client: Minio, bucket: str):
    if not client.bucket_exists(bucket):
        client.make_bucket(bucket)
        logger.info(f"Created bucket: {bucket}")


def init_minio_buckets(client: Optional[Minio] = None):
    """Initialize warehouse and backup buckets on startup."""
    client = client or get_minio_client()
    try:
        for bucket in ALL_BUCKETS:
            _ensure_bucket(client, bucket)
        logger.info("MinIO initialization completed")
    except S3Error as e:
        logger.error(f"MinIO initialization error: {e}")
        raise


def download_warehouse(local_path: Optional[str] = None, client: Optional[Minio] = None) -> str:
    """
    Fetch the warehouse file from MinIO into local_path. Stale local
    copies (and their WAL) are removed first; a missing object means a fresh
    warehouse. Returns the local path.
    """
    local_path = local_path or WAREHOUSE_CONFIG['duckdb_path']
    os.makedirs(os.path.dirname(os.path.abspath(local_path)), exist_ok=True)

    for ext in ['', '.wal', '.tmp']:
        path = local_path + ext
        if os.path.exists(path):
            os.remove(path)

    client = client or get_minio_client()
    try:
        client.stat_object(WAREHOUSE_BUCKET, DUCKDB_OBJECT)
    except S3Error as e:
        if e.code in ('NoSuchKey', 'NoSuchBucket', 'NoSuchObject'):
            logger.info("No existing warehouse on MinIO, will create new")
            return local_path
        raise

    client.fget_object(WAREHOUSE_BUCKET, DUCKDB_OBJECT, local_path)
    logger.info(f"Downloaded warehouse from MinIO to {local_path}")
    return local_path


def upload_warehouse(local_path: str, client: Optional[Minio] = None):
    """Upload the (checkpointed) warehouse file to MinIO."""
    client = client or get_minio_client()
    try:
        _ensure_bucket(client, WAREHOUSE_BUCKET)
        client.fput_object(WAREHOUSE_BUCKET, DUCKDB_OBJECT, local_path)
        logger.info("Uploaded warehouse to MinIO")
    except S3Error as e:
        logger.error(f"Upload warehouse error: {e}")
        raise


def prune_backups(client: Minio, keep: int = BACKUP_RETENTION_COUNT) -> List[str]:
    """Delete the oldest backups beyond `keep`. Timestamped names sort chronologically."""
    objects = client.list_objects(BACKUP_BUCKET, prefix=f'{BACKUP_PREFIX}/', recursive=True)
    backups = sorted(o.object_name for o in objects if o.object_name.endswith('.duckdb'))
    removed = []
    while len(backups) > keep:
        name = backups.pop(0)
        client.remove_object(BACKUP_BUCKET, name)
        removed.append(name)
    if removed:
        logger.info(f"Pruned {len(removed)} old backups")
    return removed


def backup_warehouse(local_path: str, client: Optional[Minio] = None, now: Optional[datetime] = None) -> Optional[str]:
    """Copy the warehouse file into the backup bucket. Keeps the newest BACKUP_RETENTION_COUNT."""
    if not os.path.exists(local_path):
        logger.warning(f"No warehouse file at {local_path}, skipping backup")
        return None

    client = client or get_minio_client()
    try:
        _ensure_bucket(client, BACKUP_BUCKET)
        timestamp = (now or datetime.now()).strftime('%Y%m%d_%H%M%S')
        backup_object = f'{BACKUP_PREFIX}/retail_{timestamp}.duckdb'
        client.fput_object(BACKUP_BUCKET, backup_object, local_path)
        logger.info(f"Backed up warehouse: {backup_object}")

        prune_backups(client)
        return backup_object
    except S3Error as e:
        logger.error(f"Backup warehouse error: {e}")
        return None


def export_parquet(
    conn,
    processing_date: date,
    tables: Iterable[str] = EXPORT_TABLES,
    client: Optional[Minio] = None
) -> Dict[str, int]:
    """
    Export warehouse tables to Parquet under parquet/<table>/load_date=<date>/.
    Returns {table: rows exported}; empty tables are skipped.
    """
    client = client or get_minio_client()
    _ensure_bucket(client, WAREHOUSE_BUCKET)

    exported = {}
    for table in tables:
        df = conn.fetchdf(f"SELECT * FROM {table}")
        if df.empty:
            continue

        with tempfile.NamedTemporaryFile(suffix='.parquet', delete=False) as tmp:
            tmp_path = tmp.name
        try:
            df.to_parquet(tmp_path, index=False)
            object_name = f'{PARQUET_PREFIX}/{table}/load_date={processing_date.isoformat()}/{table}.parquet'
            client.fput_object(WAREHOUSE_BUCKET, object_name, tmp_path)
        finally:
            os.unlink(tmp_path)

        exported[table] = len(df)
        logger.info(f"Exported {len(df)} rows of {table} to Parquet")
    return exported


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    init_minio_buckets()
