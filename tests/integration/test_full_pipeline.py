"""Integration tests for the full warehouse cycle.

Runs the real task graph against an in-memory (or temporary file) DuckDB
warehouse. MinIO and PostgreSQL are not needed.
"""
import pytest
import sys
import os
from datetime import date, timedelta

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from factories import click, customer, product, sale, store
from retail_dwh.cdc import ChangeLog
from retail_dwh.etl.warehouse.dimensions import UNKNOWN_MEMBER_KEY, halt_dimension, release_dimension
from retail_dwh.etl.warehouse.pipeline import (
    ROOT_TASK, build_task_graph, create_scheduler, main, run_etl
)
from retail_dwh.monitoring import RunHistory
from retail_dwh.scheduling import RunOutcome

# Mark all tests in this module as integration tests
pytestmark = [
    pytest.mark.integration,
    pytest.mark.filterwarnings('ignore::retail_dwh.common.exceptions.UnresolvedReferenceWarning'),
]

DAY0 = date(2024, 3, 1)

ALL_TASKS = {
    ROOT_TASK, 'load_dim_customer', 'load_dim_product', 'load_dim_store',
    'load_fact_sales', 'load_fact_clickstream', 'reconcile_late_arriving_keys', 'data_quality_check',
}


class TestWarehouseCycle:
    """End-to-end cycles over the warehouse task graph."""

    @pytest.fixture(autouse=True)
    def _scheduler(self, warehouse, conn):
        self.warehouse = warehouse
        self.conn = conn
        self.log = ChangeLog(conn)
        self.scheduler = create_scheduler(
            warehouse, build_task_graph(retry_policy={'max_attempts': 3, 'backoff_seconds': 0}),
            sleep=lambda seconds: None, max_workers=4
        )
        self.scheduler.resume_graph(ROOT_TASK)
        yield
        self.scheduler.shutdown()

    def seed_sources(self):
        self.log.record('stg_customers', 'C1', customer())
        self.log.record('stg_products', 'P1', product())
        self.log.record('stg_stores', 'S1', store())
        self.log.record('stg_sales', 'O1-1', sale())
        self.log.record('stg_sales', 'O1-2', sale(line=2, product_id='P999'))
        self.log.record('stg_sales', 'O2-1', sale('O2', quantity=0))
        self.log.record('stg_clickstream', 'E1', click())
        self.log.record('stg_clickstream', 'E2', click('E2', customer_id=None))

    def count(self, sql, params=None):
        return self.conn.fetchone(sql, params)[0]

    def test_first_cycle_loads_star_schema(self):
        """Should run every task once and load dimensions, facts and rejects."""
        self.seed_sources()
        cycle = self.scheduler.trigger(ROOT_TASK, processing_date=DAY0)

        assert cycle.succeeded, cycle.summary()
        assert set(cycle.outcomes) == ALL_TASKS
        assert self.count("SELECT COUNT(*) FROM fact_sales") == 2
        assert self.count("SELECT COUNT(*) FROM fact_clickstream") == 2
        assert self.count("SELECT COUNT(*) FROM quality_rejects WHERE rule = 'quantity_in_range'") == 1
        assert self.count(
            "SELECT product_key FROM fact_sales WHERE order_line_id = 2"
        ) == UNKNOWN_MEMBER_KEY

        quality = cycle.runs_for('data_quality_check')[0].stats
        assert quality['failed'] == 0

    def test_late_member_and_scd2_change(self):
        """Should repoint late facts and keep history for changed customers."""
        self.seed_sources()
        self.scheduler.trigger(ROOT_TASK, processing_date=DAY0)

        self.log.record('stg_products', 'P999', product('P999'))
        self.log.record('stg_customers', 'C1', customer(city='Buffalo'))
        cycle = self.scheduler.trigger(ROOT_TASK, processing_date=DAY0 + timedelta(days=1))

        assert cycle.succeeded, cycle.summary()
        assert cycle.runs_for('reconcile_late_arriving_keys')[0].stats['resolved'] == 1
        assert self.count("SELECT COUNT(*) FROM fact_sales WHERE product_key = ?", [UNKNOWN_MEMBER_KEY]) == 0

        versions = self.conn.fetchall("""
            SELECT customer_key, city, expiry_date, is_current FROM dim_customer
            WHERE customer_id = 'C1' ORDER BY customer_key
        """)
        assert [(v[1], v[2], v[3]) for v in versions] == [
            ('Albany', DAY0, False),
            ('Buffalo', None, True),
        ]
        # Facts keep the version that was current when they loaded
        loaded_keys = {r[0] for r in self.conn.fetchall("SELECT DISTINCT customer_key FROM fact_sales")}
        assert loaded_keys == {versions[0][0]}

    def test_quiet_cycle_changes_nothing(self):
        """Should succeed without writing facts when no source changed."""
        self.seed_sources()
        self.scheduler.trigger(ROOT_TASK, processing_date=DAY0)
        cycle = self.scheduler.trigger(ROOT_TASK, processing_date=DAY0)

        assert cycle.succeeded
        assert cycle.runs_for('load_fact_sales')[0].stats['inserted'] == 0
        assert self.count("SELECT COUNT(*) FROM fact_sales") == 2

    def test_halted_dimension_skips_downstream(self):
        """Should fail the halted merge, skip its dependents and recover after release."""
        self.seed_sources()
        halt_dimension(self.conn, 'dim_customer', 'manual repair')

        cycle = self.scheduler.trigger(ROOT_TASK, processing_date=DAY0)
        assert cycle.outcome('load_dim_customer') == RunOutcome.FAILED
        assert cycle.outcome('load_dim_product') == RunOutcome.SUCCEEDED
        assert cycle.outcome('load_fact_sales') == RunOutcome.SKIPPED
        assert cycle.outcome('data_quality_check') == RunOutcome.SKIPPED
        assert self.count("SELECT COUNT(*) FROM fact_sales") == 0
        assert self.log.has_pending('stg_sales_stream')

        release_dimension(self.conn, 'dim_customer')
        assert self.scheduler.trigger(ROOT_TASK, processing_date=DAY0).succeeded
        assert self.count("SELECT COUNT(*) FROM fact_sales") == 2

    def test_run_history_recorded(self):
        """Should record every run, skipped ones included."""
        self.seed_sources()
        self.scheduler.trigger(ROOT_TASK, processing_date=DAY0)

        counts = RunHistory(self.warehouse).outcome_counts()
        assert set(counts) == ALL_TASKS
        assert all(c.get('SUCCEEDED') == 1 for c in counts.values())


class TestRunEtl:
    """Tests for the single-cycle entry point."""

    def test_run_etl_on_file(self, tmp_path):
        """Should bootstrap a new warehouse file and run one cycle."""
        db_path = str(tmp_path / 'retail.duckdb')
        result = run_etl(db_path, processing_date=DAY0)

        assert result['success'], result['message']
        assert result['processing_date'] == '2024-03-01'
        assert set(result['outcomes']) == ALL_TASKS
        assert os.path.exists(db_path)

    def test_main_exit_code(self, tmp_path):
        """Should exit 0 after a successful cycle."""
        db_path = str(tmp_path / 'retail.duckdb')
        assert main(['--db-path', db_path, '--processing-date', '2024-03-01']) == 0
