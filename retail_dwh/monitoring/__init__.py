"""Monitoring module - Health checks, run history and reports."""

from .health import HealthChecker
from .etl_metrics import RunHistory, PostgresMetricsExporter
from .reports import (
    rejects_report, rejected_records, reconciliation_report, merge_stats_report, quality_report
)

__all__ = [
    'HealthChecker',
    'RunHistory', 'PostgresMetricsExporter',
    'rejects_report', 'rejected_records', 'reconciliation_report', 'merge_stats_report', 'quality_report',
]
