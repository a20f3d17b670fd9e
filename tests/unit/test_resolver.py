"""Unit tests for surrogate key resolution."""
import pytest
import sys
import os
import warnings
from datetime import date, timedelta

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from factories import customer, product
from retail_dwh.cdc.models import ChangeEvent, ChangeKind
from retail_dwh.common.attributes import AttributeBag
from retail_dwh.common.exceptions import UnresolvedReferenceWarning
from retail_dwh.etl.warehouse.dimensions import (
    DIM_CUSTOMER, DIM_PRODUCT, UNKNOWN_MEMBER_KEY, merge_type1, merge_type2
)
from retail_dwh.etl.warehouse.resolver import SurrogateKeyResolver

DAY0 = date(2024, 3, 1)


def event(relation, key, payload, seq):
    return ChangeEvent(relation, key, AttributeBag(payload), ChangeKind.INSERT, seq)


class TestSurrogateKeyResolver:
    """Tests for current and point-in-time lookups."""

    @pytest.fixture(autouse=True)
    def _conn(self, conn):
        self.conn = conn
        merge_type2(self.conn, DIM_CUSTOMER, [event('stg_customers', 'C1', customer(record_hash='h1'), 1)], DAY0)
        merge_type2(
            self.conn, DIM_CUSTOMER,
            [event('stg_customers', 'C1', customer(record_hash='h2'), 2)],
            DAY0 + timedelta(days=10)
        )
        merge_type1(self.conn, DIM_PRODUCT, [event('stg_products', 'P1', product(), 3)], DAY0)
        self.resolver = SurrogateKeyResolver(self.conn)

    def key_for(self, record_hash):
        return self.conn.fetchone(
            "SELECT customer_key FROM dim_customer WHERE record_hash = ?", [record_hash]
        )[0]

    def test_resolve_current_version(self):
        """Should resolve to the current Type 2 version."""
        assert self.resolver.resolve('dim_customer', 'C1') == self.key_for('h2')

    def test_resolve_missing_and_null(self):
        """Should return None for missing members and null references."""
        assert self.resolver.resolve('dim_customer', 'C404') is None
        assert self.resolver.resolve('dim_customer', None) is None

    def test_unknown_member_never_resolved_by_natural_key(self):
        """Should not hand out the sentinel for its placeholder natural key."""
        assert self.resolver.resolve('dim_customer', '__UNKNOWN__') is None

    def test_resolve_as_of(self):
        """Should resolve the version effective on a past date."""
        assert self.resolver.resolve_as_of('dim_customer', 'C1', DAY0 + timedelta(days=3)) == self.key_for('h1')
        assert self.resolver.resolve_as_of('dim_customer', 'C1', DAY0 + timedelta(days=10)) == self.key_for('h2')
        assert self.resolver.resolve_as_of('dim_customer', 'C1', DAY0 - timedelta(days=1)) is None

    def test_resolve_as_of_type1_uses_current(self):
        """Should use the single row for Type 1 dimensions."""
        key = self.resolver.resolve('dim_product', 'P1')
        assert key is not None
        assert self.resolver.resolve_as_of('dim_product', 'P1', date(2000, 1, 1)) == key

    def test_earliest_version(self):
        """Should return the first version of a member."""
        assert self.resolver.earliest_version('dim_customer', 'C1') == self.key_for('h1')

    def test_cache_needs_invalidation(self):
        """Should serve cached keys until invalidated."""
        assert self.resolver.resolve('dim_product', 'P2') is None
        merge_type1(self.conn, DIM_PRODUCT, [event('stg_products', 'P2', product('P2'), 4)], DAY0)
        assert self.resolver.resolve('dim_product', 'P2') is None

        self.resolver.invalidate('dim_product')
        assert self.resolver.resolve('dim_product', 'P2') is not None

    def test_unknown_dimension(self):
        """Should raise ValueError for unknown dimensions."""
        with pytest.raises(ValueError):
            self.resolver.resolve('dim_weather', 'X')


class TestFactPathLookup:
    """Tests for lookups made while loading facts."""

    @pytest.fixture(autouse=True)
    def _conn(self, conn):
        self.conn = conn
        self.resolver = SurrogateKeyResolver(self.conn)

    def test_miss_returns_sentinel_and_logs(self):
        """Should return the unknown member key, warn and log a reconciliation row."""
        with pytest.warns(UnresolvedReferenceWarning):
            key = self.resolver.lookup('dim_product', 'P999', 'fact_sales', ('O1', 1), 'product_key', DAY0)

        assert key == UNKNOWN_MEMBER_KEY
        assert self.resolver.misses == 1
        row = self.conn.fetchone(
            "SELECT degenerate_id, natural_key, reference_date, resolved_key FROM reconciliation_log"
        )
        assert row == ('["O1", 1]', 'P999', DAY0, None)

    def test_null_reference_is_silent(self):
        """Should map a null reference to the sentinel without a reconciliation row."""
        with warnings.catch_warnings():
            warnings.simplefilter('error')
            key = self.resolver.lookup('dim_customer', None, 'fact_clickstream', ('E1',), 'customer_key')

        assert key == UNKNOWN_MEMBER_KEY
        assert self.conn.fetchone("SELECT COUNT(*) FROM reconciliation_log")[0] == 0

    def test_resolve_date_key(self):
        """Should map dates to YYYYMMDD keys."""
        assert SurrogateKeyResolver.resolve_date_key(DAY0) == 20240301
        assert SurrogateKeyResolver.resolve_date_key(None) is None
