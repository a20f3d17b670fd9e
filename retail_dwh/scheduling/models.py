"""Task, retry and run records for the warehouse scheduler."""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from retail_dwh.common.exceptions import TaskGraphError
from retail_dwh.config import RETRY_CONFIG, SCHEDULER_CONFIG


class TaskState(str, Enum):
    SUSPENDED = 'SUSPENDED'
    SCHEDULED = 'SCHEDULED'
    RUNNING = 'RUNNING'
    SUCCEEDED = 'SUCCEEDED'
    FAILED = 'FAILED'


class RunOutcome(str, Enum):
    SUCCEEDED = 'SUCCEEDED'
    FAILED = 'FAILED'
    SKIPPED = 'SKIPPED'


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 1
    backoff_seconds: float = 0.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 300.0

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        wait = self.backoff_seconds * (self.backoff_multiplier ** (attempt - 1))
        return min(wait, self.max_backoff_seconds)

    @classmethod
    def from_options(cls, options: Optional[Mapping[str, Any]]) -> 'RetryPolicy':
        if not options:
            return cls()
        return cls(
            max_attempts=int(options.get('max_attempts', 1)),
            backoff_seconds=float(options.get('backoff_seconds', 0.0)),
            backoff_multiplier=float(options.get('backoff_multiplier', 2.0)),
            max_backoff_seconds=float(options.get('max_backoff_seconds', 300.0)),
        )

    @classmethod
    def default(cls) -> 'RetryPolicy':
        return cls.from_options(RETRY_CONFIG)


FailureHook = Callable[[str, BaseException, Any], None]

_KNOWN_OPTIONS = {
    'schedule', 'predecessors', 'resource_binding', 'retry_policy', 'timeout_seconds', 'targets', 'on_failure',
}


@dataclass
class TaskConfig:
    name: str
    body: Callable[..., Optional[Dict[str, Any]]]
    schedule: Optional[str] = None
    predecessors: Tuple[str, ...] = ()
    resource_binding: Optional[str] = None
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    timeout_seconds: Optional[float] = None
    targets: Tuple[str, ...] = ()
    on_failure: Tuple[FailureHook, ...] = ()

    def __post_init__(self):
        self.predecessors = tuple(self.predecessors)
        self.targets = tuple(self.targets)
        self.on_failure = tuple(self.on_failure)

    @property
    def is_root(self) -> bool:
        return not self.predecessors

    @classmethod
    def from_options(cls, name: str, body: Callable, options: Optional[Mapping[str, Any]] = None) -> 'TaskConfig':
        """
        Build a task from its configuration surface:
        {schedule, predecessors, resource_binding, retry_policy, timeout_seconds, targets}.
        """
        options = dict(options or {})
        unknown = set(options) - _KNOWN_OPTIONS
        if unknown:
            raise TaskGraphError(f"Task {name}: unknown options {sorted(unknown)}")

        retry = options.get('retry_policy')
        if not isinstance(retry, RetryPolicy):
            retry = RetryPolicy.from_options(retry) if retry is not None else RetryPolicy.default()

        timeout = options.get('timeout_seconds', SCHEDULER_CONFIG['task_timeout_seconds'])
        return cls(
            name=name,
            body=body,
            schedule=options.get('schedule'),
            predecessors=tuple(options.get('predecessors') or ()),
            resource_binding=options.get('resource_binding'),
            retry_policy=retry,
            timeout_seconds=float(timeout) if timeout else None,
            targets=tuple(options.get('targets') or ()),
            on_failure=tuple(options.get('on_failure') or ()),
        )


@dataclass
class TaskRun:
    run_id: str
    task_name: str
    cycle_id: str
    attempt: int
    scheduled_at: Optional[datetime]
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    outcome: Optional[RunOutcome] = None
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    skip_reason: Optional[str] = None
    stats: Optional[Dict[str, Any]] = None
    error: Optional[BaseException] = field(default=None, repr=False, compare=False)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


@dataclass
class CycleResult:
    cycle_id: str
    root: str
    scheduled_at: datetime
    processing_date: date
    runs: List[TaskRun] = field(default_factory=list)
    outcomes: Dict[str, RunOutcome] = field(default_factory=dict)

    def outcome(self, task_name: str) -> Optional[RunOutcome]:
        return self.outcomes.get(task_name)

    def runs_for(self, task_name: str) -> List[TaskRun]:
        return [r for r in self.runs if r.task_name == task_name]

    @property
    def succeeded(self) -> bool:
        return bool(self.outcomes) and all(o == RunOutcome.SUCCEEDED for o in self.outcomes.values())

    def summary(self) -> Dict[str, str]:
        return {name: outcome.value for name, outcome in self.outcomes.items()}
