"""
Task scheduler: fires task graphs on cron and predecessor completion.

Each attempt of a task body runs in one transaction on its own DuckDB cursor.
Independent tasks run concurrently on a thread pool, bounded per resource
binding, and tasks writing the same table are serialized by per-table locks.
A firing of a task that is still in flight is dropped and recorded SKIPPED.
"""

import logging
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from contextlib import ExitStack
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Set

import duckdb
import pytz

from retail_dwh.common.exceptions import TaskTimeoutError, TransientIOError
from retail_dwh.config import POOL_SIZES, SCHEDULER_CONFIG
from retail_dwh.storage.duckdb_store import Warehouse, WarehouseConnection
from .graph import TaskGraph
from .models import CycleResult, FailureHook, RunOutcome, TaskConfig, TaskRun, TaskState
from .triggers import CronTrigger

logger = logging.getLogger(__name__)

OVERLAP_SKIP_REASON = 'overlapping run in flight'
SUSPENDED_SKIP_REASON = 'task suspended'

RETRYABLE_ERRORS = (TransientIOError, duckdb.TransactionException)


def _utcnow() -> datetime:
    return datetime.now(pytz.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


class TaskContext:
    """What a task body sees: its connection, dates and cancellation state."""

    def __init__(
        self,
        task_name: str,
        cycle_id: str,
        conn: WarehouseConnection,
        processing_date: date,
        scheduled_at: datetime,
        attempt: int
    ):
        self.task_name = task_name
        self.cycle_id = cycle_id
        self.conn = conn
        self.processing_date = processing_date
        self.scheduled_at = scheduled_at
        self.attempt = attempt
        self._lock = threading.Lock()
        self._cancelled = False
        self._committing = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> bool:
        """Mark the attempt cancelled unless its commit already started."""
        with self._lock:
            if self._committing:
                return False
            self._cancelled = True
        return True

    def check_cancelled(self):
        if self._cancelled:
            raise TaskTimeoutError(f"{self.task_name} cancelled after exceeding its timeout")

    def begin_commit(self):
        with self._lock:
            self.check_cancelled()
            self._committing = True


class Scheduler:
    """Drives a validated TaskGraph. Tasks start suspended."""

    def __init__(
        self,
        warehouse: Warehouse,
        graph: TaskGraph,
        max_workers: Optional[int] = None,
        pool_sizes: Optional[Dict[str, int]] = None,
        history: Any = None,
        failure_hooks: Optional[List[FailureHook]] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = _utcnow
    ):
        self.warehouse = warehouse
        self.graph = graph.validate()
        self.history = history
        self.failure_hooks = list(failure_hooks or [])
        self._sleep = sleep
        self._clock = clock

        self._pool_sizes = dict(POOL_SIZES if pool_sizes is None else pool_sizes)
        self._pools: Dict[str, threading.BoundedSemaphore] = {}
        self._table_locks: Dict[str, threading.Lock] = {}
        self._task_locks = {name: threading.Lock() for name in graph.names}
        self._registry_lock = threading.Lock()

        self._suspended: Set[str] = set(graph.names)
        self._states: Dict[str, TaskState] = {name: TaskState.SCHEDULED for name in graph.names}
        self._triggers = {root: CronTrigger.parse(graph[root].schedule) for root in graph.roots()}
        self._next_fire: Dict[str, datetime] = {}

        self.runs: List[TaskRun] = []
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or SCHEDULER_CONFIG['max_workers'], thread_name_prefix='dwh-task'
        )
        self._cycle_executor = ThreadPoolExecutor(
            max_workers=max(len(self._triggers), 1) + 1, thread_name_prefix='dwh-cycle'
        )

    # ------------------------------------------------------------------
    # Operator surface
    # ------------------------------------------------------------------

    def state(self, name: str) -> TaskState:
        if name in self._suspended:
            return TaskState.SUSPENDED
        return self._states[name]

    def resume(self, name: str):
        self._suspended.discard(name)
        if name in self._triggers and name not in self._next_fire:
            self._next_fire[name] = self._triggers[name].next_fire_after(self._clock())
            logger.info(f"Resumed root {name}, next fire {self._next_fire[name].isoformat()}")

    def suspend(self, name: str):
        self._suspended.add(name)
        self._next_fire.pop(name, None)

    def resume_graph(self, root: str) -> List[str]:
        """Resume every task of a root's graph, dependents before the root."""
        order = self.graph.activation_order(root)
        for name in reversed(order):
            self.resume(name)
        return order

    def suspend_graph(self, root: str):
        for name in self.graph.activation_order(root):
            self.suspend(name)

    def next_fire(self, root: str) -> Optional[datetime]:
        return self._next_fire.get(root)

    # ------------------------------------------------------------------
    # Triggering
    # ------------------------------------------------------------------

    def tick(self, now: Optional[datetime] = None) -> List[Future]:
        """
        Fire every resumed root whose next cron time is due. Missed fire
        times are not caught up: the next fire is computed from now.
        """
        now = now or self._clock()
        if now.tzinfo is None:
            now = pytz.utc.localize(now)

        futures = []
        for root, fire_at in list(self._next_fire.items()):
            if root in self._suspended or fire_at > now:
                continue
            self._next_fire[root] = self._triggers[root].next_fire_after(now)
            logger.info(f"Cron fire: {root} scheduled_at={fire_at.isoformat()}")
            futures.append(self._cycle_executor.submit(self._run_cycle, root, fire_at, None))
        return futures

    def trigger(self, root: str, scheduled_at: Optional[datetime] = None, processing_date: Optional[date] = None) -> CycleResult:
        """
        Run one cycle of a root's graph synchronously. A suspended root is
        recorded SKIPPED along with its dependents.
        """
        return self._run_cycle(root, scheduled_at or self._clock(), processing_date)

    def trigger_async(self, root: str, scheduled_at: Optional[datetime] = None, processing_date: Optional[date] = None) -> Future:
        return self._cycle_executor.submit(self._run_cycle, root, scheduled_at or self._clock(), processing_date)

    def run_forever(self, stop_event: threading.Event, poll_seconds: Optional[float] = None):
        poll = poll_seconds or SCHEDULER_CONFIG['poll_seconds']
        logger.info(f"Scheduler loop started (poll={poll}s)")
        while not stop_event.is_set():
            self.tick()
            stop_event.wait(poll)
        logger.info("Scheduler loop stopped")

    def shutdown(self, wait_for_runs: bool = True):
        self._cycle_executor.shutdown(wait=wait_for_runs)
        self._executor.shutdown(wait=wait_for_runs)

    # ------------------------------------------------------------------
    # Cycle execution
    # ------------------------------------------------------------------

    def _run_cycle(self, root: str, scheduled_at: datetime, processing_date: Optional[date]) -> CycleResult:
        if not self.graph[root].is_root:
            raise ValueError(f"{root} is not a root task")

        processing_date = processing_date or self._triggers[root].local_date(scheduled_at)
        result = CycleResult(_new_id(), root, scheduled_at, processing_date)
        logger.info(f"Cycle {result.cycle_id} start: root={root}, processing_date={processing_date}")
        for name in self.graph.activation_order(root):
            if self._states[name] != TaskState.RUNNING:
                self._states[name] = TaskState.SCHEDULED

        sorter = self.graph.sorter(root)
        pending: Dict[Future, str] = {}
        while sorter.is_active():
            for name in sorter.get_ready():
                reason = self._skip_reason(name, result.outcomes)
                if reason:
                    self._record(result, [self._skipped_run(name, result, reason)])
                    sorter.done(name)
                    continue
                future = self._executor.submit(self._execute, self.graph[name], result)
                pending[future] = name

            if not pending:
                continue

            done, _ = wait(list(pending), return_when=FIRST_COMPLETED)
            for future in done:
                name = pending.pop(future)
                self._record(result, future.result())
                sorter.done(name)

        logger.info(f"Cycle {result.cycle_id} end: {result.summary()}")
        return result

    def _skip_reason(self, name: str, outcomes: Dict[str, RunOutcome]) -> Optional[str]:
        if name in self._suspended:
            return SUSPENDED_SKIP_REASON
        for pred in self.graph[name].predecessors:
            outcome = outcomes.get(pred)
            if outcome != RunOutcome.SUCCEEDED:
                return f"predecessor {pred} {outcome.value if outcome else 'did not run'}"
        return None

    def _record(self, result: CycleResult, runs: List[TaskRun]):
        for run in runs:
            result.runs.append(run)
            self.runs.append(run)
            if run.outcome == RunOutcome.SKIPPED:
                logger.warning(f"Task {run.task_name} skipped in cycle {run.cycle_id}: {run.skip_reason}")
            if self.history is not None:
                self.history.record(run)
        if runs:
            result.outcomes[runs[-1].task_name] = runs[-1].outcome

    def _skipped_run(self, name: str, result: CycleResult, reason: str) -> TaskRun:
        now = _utcnow()
        return TaskRun(
            run_id=_new_id(), task_name=name, cycle_id=result.cycle_id, attempt=0,
            scheduled_at=result.scheduled_at, started_at=now, finished_at=now,
            outcome=RunOutcome.SKIPPED, skip_reason=reason,
        )

    def _pool(self, binding: str) -> threading.BoundedSemaphore:
        with self._registry_lock:
            if binding not in self._pools:
                size = self._pool_sizes.get(binding, SCHEDULER_CONFIG['default_pool_size'])
                self._pools[binding] = threading.BoundedSemaphore(size)
            return self._pools[binding]

    def _table_lock(self, table: str) -> threading.Lock:
        with self._registry_lock:
            return self._table_locks.setdefault(table, threading.Lock())

    def _execute(self, task: TaskConfig, result: CycleResult) -> List[TaskRun]:
        """All attempts of one task in one cycle."""
        task_lock = self._task_locks[task.name]
        if not task_lock.acquire(blocking=False):
            return [self._skipped_run(task.name, result, OVERLAP_SKIP_REASON)]

        runs = []
        try:
            with ExitStack() as stack:
                if task.resource_binding:
                    stack.enter_context(self._pool(task.resource_binding))
                for table in sorted(set(task.targets)):
                    stack.enter_context(self._table_lock(table))

                policy = task.retry_policy
                attempt = 1
                while True:
                    run = self._attempt(task, result, attempt)
                    runs.append(run)
                    if run.outcome == RunOutcome.SUCCEEDED:
                        break
                    if not isinstance(run.error, RETRYABLE_ERRORS) or attempt >= policy.max_attempts:
                        break
                    delay = policy.delay(attempt)
                    logger.warning(
                        f"Task {task.name} attempt {attempt}/{policy.max_attempts} failed "
                        f"({run.error_type}); retrying in {delay:.1f}s"
                    )
                    self._sleep(delay)
                    attempt += 1
        finally:
            task_lock.release()
        return runs

    def _attempt(self, task: TaskConfig, result: CycleResult, attempt: int) -> TaskRun:
        run = TaskRun(
            run_id=_new_id(), task_name=task.name, cycle_id=result.cycle_id, attempt=attempt,
            scheduled_at=result.scheduled_at, started_at=_utcnow(),
        )
        conn = self.warehouse.connect()
        ctx = TaskContext(task.name, result.cycle_id, conn, result.processing_date, result.scheduled_at, attempt)

        watchdog = None
        if task.timeout_seconds:
            watchdog = threading.Timer(task.timeout_seconds, self._on_timeout, args=(task, ctx))
            watchdog.daemon = True
            watchdog.start()

        self._states[task.name] = TaskState.RUNNING
        try:
            conn.begin()
            stats = task.body(ctx)
            ctx.begin_commit()
            conn.commit()
            run.outcome = RunOutcome.SUCCEEDED
            run.stats = stats
            self._states[task.name] = TaskState.SUCCEEDED
            logger.info(f"Task {task.name} succeeded (attempt {attempt}): {stats}")
        except Exception as e:
            if conn.in_transaction:
                try:
                    conn.rollback()
                except duckdb.Error as rollback_error:
                    # Closing the cursor below still discards the transaction
                    logger.error(f"Rollback of {task.name} failed: {rollback_error}")
            error = e
            if ctx.cancelled and not isinstance(e, TaskTimeoutError):
                error = TaskTimeoutError(f"{task.name} exceeded timeout of {task.timeout_seconds}s: {e}")
            run.outcome = RunOutcome.FAILED
            run.error = error
            run.error_type = type(error).__name__
            run.error_message = str(error)
            self._states[task.name] = TaskState.FAILED
            logger.error(f"Task {task.name} failed (attempt {attempt}): {run.error_type}: {error}")
            self._run_failure_hooks(task, error, conn)
        finally:
            if watchdog is not None:
                watchdog.cancel()
            conn.close()
            run.finished_at = _utcnow()
        return run

    def _on_timeout(self, task: TaskConfig, ctx: TaskContext):
        if ctx.cancel():
            logger.warning(f"Task {task.name} exceeded {task.timeout_seconds}s; cancelling")
            ctx.conn.interrupt()

    def _run_failure_hooks(self, task: TaskConfig, error: BaseException, conn: WarehouseConnection):
        for hook in list(task.on_failure) + self.failure_hooks:
            try:
                hook(task.name, error, conn)
            except Exception as hook_error:
                logger.error(f"Failure hook {getattr(hook, '__name__', hook)} for {task.name} failed: {hook_error}")
