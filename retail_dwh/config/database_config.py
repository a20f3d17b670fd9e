"""Monitoring database configuration (PostgreSQL)"""
import os

DB_CONFIG = {
    "host": os.getenv("DB_HOST", "postgres"),
    "port": int(os.getenv("DB_PORT", "5432")),
    "user": os.getenv("DB_USER", "retail"),
    "password": os.getenv("DB_PASSWORD", "retail"),
    "database": os.getenv("DB_NAME", "retail_monitoring"),
}

# Export of task run history is disabled unless a connection string is set
PG_MONITORING_CONN_STRING = os.getenv("PG_MONITORING_CONN_STRING", "")
