"""Quality Gate - splits a change batch into valid and quarantined events."""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple

from retail_dwh.cdc.models import ChangeEvent
from .rejects import RejectsSink
from .validators import RecordValidator, ValidationConfig, ValidationOutcome

logger = logging.getLogger(__name__)


@dataclass
class GateResult:
    """Quality gate result."""
    relation: str
    status: str  # 'success', 'warning', 'degraded'
    passed: int
    failed: int
    valid_events: List[ChangeEvent] = field(default_factory=list)
    rejected: List[Tuple[ChangeEvent, ValidationOutcome]] = field(default_factory=list)
    violations: Dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return self.passed + self.failed

    @property
    def pass_rate(self) -> float:
        return self.passed / self.total if self.total else 1.0

    @property
    def message(self) -> str:
        return f"{self.relation}: {self.passed}/{self.total} passed ({self.pass_rate:.1%})"


def gate_status(pass_rate: float, config: ValidationConfig) -> str:
    if pass_rate >= config.success_threshold:
        return 'success'
    if pass_rate >= config.warning_threshold:
        return 'warning'
    return 'degraded'


class QualityGate:
    """
    Validates the INSERT images of a batch and quarantines failures.

    Before-images and hard deletes are not validated and pass through in
    order. A low pass rate degrades the status but never fails the task.
    """

    def __init__(self, validator: RecordValidator = None, sink: Optional[RejectsSink] = None):
        self.validator = validator or RecordValidator()
        self.config = self.validator.config
        self.sink = sink

    def partition(self, relation: str, events: Iterable[ChangeEvent], as_of: Optional[date] = None) -> GateResult:
        valid_events = []
        rejected = []
        violations = Counter()
        passed = 0

        for event in events:
            if not event.is_insert_image:
                valid_events.append(event)
                continue

            outcome = self.validator.validate(relation, event.payload, as_of)
            if outcome.valid:
                passed += 1
                valid_events.append(event)
                continue

            rejected.append((event, outcome))
            violations[outcome.rule] += 1
            if self.sink is not None:
                self.sink.quarantine(event, outcome.rule, outcome.invalid_reason)

        failed = len(rejected)
        total = passed + failed
        status = gate_status(passed / total if total else 1.0, self.config)
        result = GateResult(
            relation=relation,
            status=status,
            passed=passed,
            failed=failed,
            valid_events=valid_events,
            rejected=rejected,
            violations=dict(violations),
        )

        if status == 'success':
            logger.info(f"Quality gate passed: {result.message}")
        else:
            logger.warning(f"Quality gate {status}: {result.message}, violations={result.violations}")
        return result
