"""Warehouse and CDC configuration (DuckDB)"""
import os

WAREHOUSE_CONFIG = {
    "duckdb_path": os.getenv("DWH_DUCKDB_PATH", "/tmp/retail_dwh/retail.duckdb"),
    "local_temp_dir": os.getenv("DWH_LOCAL_TEMP_DIR", "/tmp/retail_dwh"),
    # Calendar window kept populated around each processing date
    "date_lookback_days": int(os.getenv("DWH_DATE_LOOKBACK_DAYS", "30")),
    "date_projection_days": int(os.getenv("DWH_DATE_PROJECTION_DAYS", "5")),
}

CDC_CONFIG = {
    "read_page_size": int(os.getenv("CDC_READ_PAGE_SIZE", "500")),
    # Staging tables are transient: one day of change retention
    "default_retention_days": int(os.getenv("CDC_RETENTION_DAYS", "1")),
}
