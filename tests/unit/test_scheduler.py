"""Unit tests for the task scheduler."""
import pytest
import sys
import os
import threading
import time
from datetime import date, datetime

import pytz

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from retail_dwh.common.exceptions import MergeInvariantViolation, TransientIOError
from retail_dwh.etl.warehouse.dimensions import halt_on_invariant_violation, is_halted
from retail_dwh.scheduling import (
    OVERLAP_SKIP_REASON, SUSPENDED_SKIP_REASON, RetryPolicy, RunOutcome, Scheduler,
    TaskConfig, TaskGraph, TaskState
)

SCHEDULE = '*/5 * * * * UTC'
T0 = datetime(2024, 3, 1, 10, 2, tzinfo=pytz.utc)


def ok(ctx):
    return {'task': ctx.task_name}


def graph_of(*tasks):
    return TaskGraph(tasks)


class SchedulerTestBase:
    """Builds schedulers over the shared in-memory warehouse."""

    @pytest.fixture(autouse=True)
    def _warehouse(self, warehouse):
        self.warehouse = warehouse
        self.sleeps = []
        self.schedulers = []
        yield
        for scheduler in self.schedulers:
            scheduler.shutdown()

    def make(self, graph, root='root', resume=True, **kwargs):
        kwargs.setdefault('sleep', self.sleeps.append)
        kwargs.setdefault('clock', lambda: T0)
        kwargs.setdefault('max_workers', 4)
        scheduler = Scheduler(self.warehouse, graph, **kwargs)
        self.schedulers.append(scheduler)
        if resume:
            scheduler.resume_graph(root)
        return scheduler


class TestPredecessorGating(SchedulerTestBase):
    """Tests for predecessor-driven firing."""

    def test_failed_predecessor_skips_dependent(self):
        """Should skip B when its predecessor C fails, then run it once C recovers."""
        broken = {'c': True}

        def task_c(ctx):
            if broken['c']:
                raise ValueError('bad input')
            return {'rows': 1}

        scheduler = self.make(graph_of(
            TaskConfig('root', ok, schedule=SCHEDULE),
            TaskConfig('a', ok, predecessors=['root']),
            TaskConfig('c', task_c, predecessors=['root']),
            TaskConfig('b', ok, predecessors=['a', 'c']),
        ))

        first = scheduler.trigger('root')
        assert first.outcome('a') == RunOutcome.SUCCEEDED
        assert first.outcome('c') == RunOutcome.FAILED
        assert first.outcome('b') == RunOutcome.SKIPPED
        assert first.runs_for('b')[0].skip_reason == 'predecessor c FAILED'
        assert scheduler.state('c') == TaskState.FAILED

        broken['c'] = False
        second = scheduler.trigger('root')
        assert second.succeeded
        assert second.outcome('b') == RunOutcome.SUCCEEDED

    def test_dependents_run_after_predecessors(self):
        """Should start a task only after all its predecessors finished."""
        finished = []

        def record(ctx):
            finished.append(ctx.task_name)

        scheduler = self.make(graph_of(
            TaskConfig('root', record, schedule=SCHEDULE),
            TaskConfig('x', record, predecessors=['root']),
            TaskConfig('y', record, predecessors=['root']),
            TaskConfig('z', record, predecessors=['x', 'y']),
        ))
        scheduler.trigger('root')

        assert finished[0] == 'root'
        assert finished[-1] == 'z'
        assert set(finished[1:3]) == {'x', 'y'}

    def test_processing_date_defaults_to_local_scheduled_date(self):
        """Should hand bodies the calendar date of the scheduled time."""
        seen = {}

        def capture(ctx):
            seen['date'] = ctx.processing_date

        scheduler = self.make(graph_of(TaskConfig('root', capture, schedule='0 2 * * * America/New_York')))
        scheduler.trigger('root', scheduled_at=datetime(2024, 3, 2, 3, 0, tzinfo=pytz.utc))
        assert seen['date'] == date(2024, 3, 1)


class TestSuspension(SchedulerTestBase):
    """Tests for suspend and resume."""

    def test_tasks_start_suspended(self):
        """Should create every task suspended."""
        scheduler = self.make(graph_of(
            TaskConfig('root', ok, schedule=SCHEDULE),
            TaskConfig('a', ok, predecessors=['root']),
        ), resume=False)
        assert scheduler.state('root') == TaskState.SUSPENDED
        assert scheduler.next_fire('root') is None

    def test_resume_graph_returns_activation_order(self):
        """Should resume every task and schedule the root's next fire."""
        scheduler = self.make(graph_of(
            TaskConfig('root', ok, schedule=SCHEDULE),
            TaskConfig('a', ok, predecessors=['root']),
        ), resume=False)

        assert scheduler.resume_graph('root') == ['root', 'a']
        assert scheduler.state('a') == TaskState.SCHEDULED
        assert scheduler.next_fire('root') == datetime(2024, 3, 1, 10, 5, tzinfo=pytz.utc)

    def test_suspended_task_is_skipped(self):
        """Should skip a suspended task and everything downstream of it."""
        scheduler = self.make(graph_of(
            TaskConfig('root', ok, schedule=SCHEDULE),
            TaskConfig('a', ok, predecessors=['root']),
            TaskConfig('b', ok, predecessors=['a']),
        ))
        scheduler.suspend('a')

        result = scheduler.trigger('root')
        assert result.runs_for('a')[0].skip_reason == SUSPENDED_SKIP_REASON
        assert result.outcome('b') == RunOutcome.SKIPPED

    def test_manual_trigger_of_suspended_root_is_skipped(self):
        """Should record a suspended root and its dependents SKIPPED without running them."""
        ran = []

        def record(ctx):
            ran.append(ctx.task_name)

        scheduler = self.make(graph_of(
            TaskConfig('root', record, schedule=SCHEDULE),
            TaskConfig('a', record, predecessors=['root']),
        ), resume=False)

        result = scheduler.trigger('root')
        assert ran == []
        assert result.runs_for('root')[0].skip_reason == SUSPENDED_SKIP_REASON
        assert result.outcome('a') == RunOutcome.SKIPPED
        assert not result.succeeded


class TestCronFiring(SchedulerTestBase):
    """Tests for tick()."""

    def test_tick_fires_due_roots_without_catch_up(self):
        """Should fire once for several missed times and schedule from now."""
        scheduler = self.make(graph_of(TaskConfig('root', ok, schedule=SCHEDULE)))

        assert scheduler.tick(datetime(2024, 3, 1, 10, 4, tzinfo=pytz.utc)) == []

        futures = scheduler.tick(datetime(2024, 3, 1, 10, 17, tzinfo=pytz.utc))
        assert len(futures) == 1
        result = futures[0].result(timeout=10)
        assert result.scheduled_at == datetime(2024, 3, 1, 10, 5, tzinfo=pytz.utc)
        assert result.processing_date == date(2024, 3, 1)
        assert scheduler.next_fire('root') == datetime(2024, 3, 1, 10, 20, tzinfo=pytz.utc)

    def test_suspended_root_does_not_fire(self):
        """Should not fire a suspended root."""
        scheduler = self.make(graph_of(TaskConfig('root', ok, schedule=SCHEDULE)))
        scheduler.suspend_graph('root')
        assert scheduler.tick(datetime(2024, 3, 1, 11, 0, tzinfo=pytz.utc)) == []


class TestOverlap(SchedulerTestBase):
    """Tests for overlapping firings."""

    def test_overlapping_run_is_dropped(self):
        """Should record SKIPPED for a firing whose previous run is still in flight."""
        started = threading.Event()
        release = threading.Event()

        def slow_root(ctx):
            started.set()
            release.wait(10)

        scheduler = self.make(graph_of(
            TaskConfig('root', slow_root, schedule=SCHEDULE),
            TaskConfig('a', ok, predecessors=['root']),
        ))

        in_flight = scheduler.trigger_async('root')
        assert started.wait(10)

        overlapping = scheduler.trigger('root')
        assert overlapping.runs_for('root')[0].skip_reason == OVERLAP_SKIP_REASON
        assert overlapping.outcome('a') == RunOutcome.SKIPPED

        release.set()
        assert in_flight.result(timeout=10).succeeded


class TestRetriesAndTimeouts(SchedulerTestBase):
    """Tests for retry policy, timeouts and failure hooks."""

    def test_transient_errors_are_retried_with_backoff(self):
        """Should retry transient failures with growing delays."""
        calls = []

        def flaky(ctx):
            calls.append(ctx.attempt)
            if len(calls) < 3:
                raise TransientIOError('source busy')

        policy = RetryPolicy(max_attempts=3, backoff_seconds=1, backoff_multiplier=2)
        scheduler = self.make(graph_of(TaskConfig('root', flaky, schedule=SCHEDULE, retry_policy=policy)))

        result = scheduler.trigger('root')
        assert result.outcome('root') == RunOutcome.SUCCEEDED
        assert [r.attempt for r in result.runs_for('root')] == [1, 2, 3]
        assert self.sleeps == [1.0, 2.0]

    def test_exhausted_retries_fail(self):
        """Should stop after max_attempts."""
        def always_busy(ctx):
            raise TransientIOError('source busy')

        policy = RetryPolicy(max_attempts=2)
        scheduler = self.make(graph_of(TaskConfig('root', always_busy, schedule=SCHEDULE, retry_policy=policy)))

        result = scheduler.trigger('root')
        assert result.outcome('root') == RunOutcome.FAILED
        assert len(result.runs_for('root')) == 2

    def test_non_retryable_error_fails_once(self):
        """Should not retry errors outside the transient class."""
        def broken(ctx):
            raise ValueError('bad data')

        policy = RetryPolicy(max_attempts=5)
        scheduler = self.make(graph_of(TaskConfig('root', broken, schedule=SCHEDULE, retry_policy=policy)))

        result = scheduler.trigger('root')
        [run] = result.runs_for('root')
        assert run.error_type == 'ValueError'
        assert self.sleeps == []

    def test_failed_attempt_rolls_back(self):
        """Should discard every write of a failed attempt."""
        conn = self.warehouse.connect()
        conn.execute("CREATE TABLE scratch (v INTEGER)")

        def write_then_fail(ctx):
            ctx.conn.execute("INSERT INTO scratch VALUES (1)")
            raise ValueError('after write')

        scheduler = self.make(graph_of(TaskConfig('root', write_then_fail, schedule=SCHEDULE)))
        scheduler.trigger('root')

        assert conn.fetchone("SELECT COUNT(*) FROM scratch")[0] == 0
        conn.close()

    def test_timeout_cancels_and_rolls_back(self):
        """Should cancel an attempt past its timeout and discard its writes."""
        conn = self.warehouse.connect()
        conn.execute("CREATE TABLE scratch (v INTEGER)")

        def runaway(ctx):
            ctx.conn.execute("INSERT INTO scratch VALUES (1)")
            deadline = time.time() + 10
            while time.time() < deadline:
                ctx.check_cancelled()
                time.sleep(0.01)

        scheduler = self.make(graph_of(TaskConfig('root', runaway, schedule=SCHEDULE, timeout_seconds=0.1)))
        result = scheduler.trigger('root')

        [run] = result.runs_for('root')
        assert run.outcome == RunOutcome.FAILED
        assert run.error_type == 'TaskTimeoutError'
        assert conn.fetchone("SELECT COUNT(*) FROM scratch")[0] == 0
        conn.close()

    def test_failure_hook_halts_dimension(self):
        """Should run on_failure hooks with the error after rollback."""
        def violated(ctx):
            raise MergeInvariantViolation('dim_customer', '2 current rows for C1')

        scheduler = self.make(graph_of(
            TaskConfig('root', violated, schedule=SCHEDULE, on_failure=[halt_on_invariant_violation])
        ))
        scheduler.trigger('root')

        conn = self.warehouse.connect()
        assert is_halted(conn, 'dim_customer')
        conn.close()

    def test_failing_hook_does_not_mask_task_error(self):
        """Should log hook errors and keep the task's own failure."""
        def hook(task_name, error, conn):
            raise RuntimeError('hook broke')

        def broken(ctx):
            raise ValueError('bad data')

        scheduler = self.make(graph_of(TaskConfig('root', broken, schedule=SCHEDULE)), failure_hooks=[hook])
        result = scheduler.trigger('root')
        assert result.runs_for('root')[0].error_type == 'ValueError'


class TestTableLocks(SchedulerTestBase):
    """Tests for serializing writers of the same table."""

    def test_same_target_never_runs_concurrently(self):
        """Should serialize tasks that write the same table."""
        active = {'now': 0, 'max': 0}
        guard = threading.Lock()

        def writer(ctx):
            with guard:
                active['now'] += 1
                active['max'] = max(active['max'], active['now'])
            time.sleep(0.05)
            with guard:
                active['now'] -= 1

        scheduler = self.make(graph_of(
            TaskConfig('root', ok, schedule=SCHEDULE),
            TaskConfig('w1', writer, predecessors=['root'], targets=['fact_sales']),
            TaskConfig('w2', writer, predecessors=['root'], targets=['fact_sales']),
            TaskConfig('w3', writer, predecessors=['root'], targets=['fact_sales']),
        ))
        assert scheduler.trigger('root').succeeded
        assert active['max'] == 1
