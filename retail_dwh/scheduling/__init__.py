"""Scheduling module - cron-rooted task graphs with retries, timeouts and pools."""

from .models import TaskState, RunOutcome, RetryPolicy, TaskConfig, TaskRun, CycleResult
from .triggers import CronTrigger, parse_schedule
from .graph import TaskGraph
from .scheduler import Scheduler, TaskContext, OVERLAP_SKIP_REASON, SUSPENDED_SKIP_REASON

__all__ = [
    'TaskState', 'RunOutcome', 'RetryPolicy', 'TaskConfig', 'TaskRun', 'CycleResult',
    'CronTrigger', 'parse_schedule',
    'TaskGraph',
    'Scheduler', 'TaskContext', 'OVERLAP_SKIP_REASON', 'SUSPENDED_SKIP_REASON',
]
