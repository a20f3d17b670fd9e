"""Configuration module exports"""
from .database_config import DB_CONFIG, PG_MONITORING_CONN_STRING
from .storage_config import MINIO_CONFIG, BACKUP_RETENTION_COUNT
from .warehouse_config import WAREHOUSE_CONFIG, CDC_CONFIG
from .scheduler_config import SCHEDULER_CONFIG, RETRY_CONFIG, POOL_SIZES
from .quality_config import (
    DQ_SUCCESS_THRESHOLD, DQ_WARNING_THRESHOLD, DQ_AMOUNT_TOLERANCE,
    DQ_MIN_QUANTITY, DQ_MAX_QUANTITY, DQ_VALID_PAYMENT_METHODS
)

__all__ = [
    'DB_CONFIG',
    'PG_MONITORING_CONN_STRING',
    'MINIO_CONFIG',
    'BACKUP_RETENTION_COUNT',
    'WAREHOUSE_CONFIG',
    'CDC_CONFIG',
    'SCHEDULER_CONFIG',
    'RETRY_CONFIG',
    'POOL_SIZES',
    'DQ_SUCCESS_THRESHOLD',
    'DQ_WARNING_THRESHOLD',
    'DQ_AMOUNT_TOLERANCE',
    'DQ_MIN_QUANTITY',
    'DQ_MAX_QUANTITY',
    'DQ_VALID_PAYMENT_METHODS',
]
