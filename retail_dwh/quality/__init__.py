"""Quality module - record validation, gates, quarantine and warehouse checks."""

from .validators import RecordValidator, ValidationConfig, ValidationOutcome, RULES
from .gates import QualityGate, GateResult, gate_status
from .rejects import RejectsSink
from .metrics_logger import MetricsLogger
from .warehouse_checks import CheckResult, run_warehouse_checks

__all__ = [
    'RecordValidator', 'ValidationConfig', 'ValidationOutcome', 'RULES',
    'QualityGate', 'GateResult', 'gate_status',
    'RejectsSink',
    'MetricsLogger',
    'CheckResult', 'run_warehouse_checks',
]
