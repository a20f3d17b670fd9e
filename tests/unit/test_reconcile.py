"""Unit tests for late-arriving dimension reconciliation."""
import pytest
import sys
import os
import warnings
from datetime import date, timedelta

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from factories import click, customer, product, sale, store
from retail_dwh.common.exceptions import UnresolvedReferenceWarning
from retail_dwh.etl.warehouse.dimensions import (
    UNKNOWN_MEMBER_KEY, process_dim_customer, process_dim_product, process_dim_store
)
from retail_dwh.etl.warehouse.facts import (
    process_clickstream_facts, process_sales_facts, reconcile_late_arriving_keys
)

DAY0 = date(2024, 3, 1)


class TestReconcileLateArrivingKeys:
    """Tests for repointing sentinel keys."""

    @pytest.fixture(autouse=True)
    def _loaded(self, conn, changelog):
        self.conn = conn
        self.log = changelog
        self.log.record('stg_customers', 'C1', customer())
        self.log.record('stg_stores', 'S1', store())
        process_dim_customer(conn, DAY0)
        process_dim_store(conn, DAY0)

        self.log.record('stg_sales', 'O1-1', sale(product_id='P999'))
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', UnresolvedReferenceWarning)
            process_sales_facts(conn, DAY0)

    def product_key(self):
        return self.conn.fetchone("SELECT product_key FROM fact_sales WHERE order_id = 'O1'")[0]

    def test_member_still_missing(self):
        """Should leave the sentinel while the member has not arrived."""
        stats = reconcile_late_arriving_keys(self.conn)
        assert stats == {'pending': 1, 'resolved': 0, 'still_missing': 1}
        assert self.product_key() == UNKNOWN_MEMBER_KEY

    def test_late_member_repoints_fact(self):
        """Should repoint the fact once the product exists and mark the log resolved."""
        self.log.record('stg_products', 'P999', product('P999'))
        process_dim_product(self.conn, DAY0 + timedelta(days=2))

        stats = reconcile_late_arriving_keys(self.conn)
        assert stats['resolved'] == 1

        expected = self.conn.fetchone("SELECT product_key FROM dim_product WHERE product_id = 'P999'")[0]
        assert self.product_key() == expected
        assert self.conn.fetchone("SELECT resolved_key FROM reconciliation_log")[0] == expected

    def test_reconcile_is_idempotent(self):
        """Should find nothing pending on a second run."""
        self.log.record('stg_products', 'P999', product('P999'))
        process_dim_product(self.conn, DAY0)
        reconcile_late_arriving_keys(self.conn)

        assert reconcile_late_arriving_keys(self.conn) == {'pending': 0, 'resolved': 0, 'still_missing': 0}

    def test_type2_member_arriving_after_fact_date(self):
        """Should fall back to the earliest version when no version covers the fact date."""
        self.log.record('stg_clickstream', 'E1', click(customer_id='C7', product_id=None))
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', UnresolvedReferenceWarning)
            process_clickstream_facts(self.conn, DAY0)

        self.log.record('stg_customers', 'C7', customer('C7'))
        process_dim_customer(self.conn, DAY0 + timedelta(days=7))
        reconcile_late_arriving_keys(self.conn)

        expected = self.conn.fetchone("SELECT customer_key FROM dim_customer WHERE customer_id = 'C7'")[0]
        assert self.conn.fetchone("SELECT customer_key FROM fact_clickstream")[0] == expected
