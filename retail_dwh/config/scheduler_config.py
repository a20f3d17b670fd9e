"""Task scheduler configuration"""
import os

SCHEDULER_CONFIG = {
    "root_schedule": os.getenv("DWH_ROOT_SCHEDULE", "0 * * * * UTC"),  # hourly
    "max_workers": int(os.getenv("SCHEDULER_MAX_WORKERS", "4")),
    "default_pool_size": int(os.getenv("SCHEDULER_DEFAULT_POOL_SIZE", "2")),
    "poll_seconds": float(os.getenv("SCHEDULER_POLL_SECONDS", "30")),
    "task_timeout_seconds": float(os.getenv("SCHEDULER_TASK_TIMEOUT_SECONDS", "1800")),
}

# Retry defaults applied to every warehouse task
RETRY_CONFIG = {
    "max_attempts": int(os.getenv("TASK_MAX_ATTEMPTS", "3")),
    "backoff_seconds": float(os.getenv("TASK_BACKOFF_SECONDS", "5")),
    "backoff_multiplier": float(os.getenv("TASK_BACKOFF_MULTIPLIER", "2.0")),
    "max_backoff_seconds": float(os.getenv("TASK_MAX_BACKOFF_SECONDS", "300")),
}

# Compute pools (resource bindings) and how many tasks each may run at once
POOL_SIZES = {
    "TRANSFORM_WH": int(os.getenv("POOL_TRANSFORM_WH_SIZE", "2")),
}
