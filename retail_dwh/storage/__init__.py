"""Storage module exports"""
from .duckdb_store import Warehouse, WarehouseConnection, get_duckdb_connection, setup_schema
from .minio import (
    get_minio_client, init_minio_buckets, download_warehouse, upload_warehouse,
    backup_warehouse, prune_backups, export_parquet
)

__all__ = [
    'Warehouse',
    'WarehouseConnection',
    'get_duckdb_connection',
    'setup_schema',
    'get_minio_client',
    'init_minio_buckets',
    'download_warehouse',
    'upload_warehouse',
    'backup_warehouse',
    'prune_backups',
    'export_parquet',
]
