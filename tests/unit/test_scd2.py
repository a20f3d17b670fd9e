"""Unit tests for the SCD Type 2 merge and dimension invariants."""
import pytest
import sys
import os
from datetime import date, timedelta

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from factories import customer
from retail_dwh.cdc.models import ACTION_DELETE, ChangeEvent, ChangeKind
from retail_dwh.common.attributes import AttributeBag
from retail_dwh.common.exceptions import MergeInvariantViolation
from retail_dwh.etl.warehouse.dimensions import (
    DIM_CUSTOMER, check_dimension_invariants, halt_dimension, halt_on_invariant_violation,
    is_halted, load_histories, merge_type2, process_dim_customer, release_dimension
)

DAY0 = date(2024, 3, 1)


def image(seq, record_hash, customer_id='C1', first_name='Alice'):
    payload = {'customer_id': customer_id, 'record_hash': record_hash, 'first_name': first_name}
    return ChangeEvent('stg_customers', customer_id, AttributeBag(payload), ChangeKind.INSERT, seq)


class TestMergeType2:
    """Tests for expiring and appending versions."""

    @pytest.fixture(autouse=True)
    def _conn(self, conn):
        self.conn = conn

    def versions(self, customer_id='C1'):
        return self.conn.fetchall("""
            SELECT record_hash, effective_date, expiry_date, is_current
            FROM dim_customer WHERE customer_id = ?
            ORDER BY customer_key
        """, [customer_id])

    def test_new_key_inserts_current_version(self):
        """Should insert one open current version effective on the processing date."""
        stats = merge_type2(self.conn, DIM_CUSTOMER, [image(1, 'h1')], DAY0)
        assert stats.inserted == 1
        assert self.versions() == [('h1', DAY0, None, True)]

    def test_change_expires_previous_version(self):
        """Should close the old version the day before the new one starts."""
        merge_type2(self.conn, DIM_CUSTOMER, [image(1, 'h1')], DAY0)
        day5 = DAY0 + timedelta(days=5)
        stats = merge_type2(self.conn, DIM_CUSTOMER, [image(2, 'h2', first_name='Alicia')], day5)

        assert (stats.expired, stats.inserted) == (1, 1)
        assert self.versions() == [
            ('h1', DAY0, DAY0 + timedelta(days=4), False),
            ('h2', day5, None, True),
        ]

    def test_reapplying_batch_is_a_noop(self):
        """Should add no version when the hash matches the current row."""
        merge_type2(self.conn, DIM_CUSTOMER, [image(1, 'h1')], DAY0)
        stats = merge_type2(self.conn, DIM_CUSTOMER, [image(1, 'h1')], DAY0 + timedelta(days=1))
        assert stats.unchanged == 1
        assert len(self.versions()) == 1

    def test_batch_applied_in_sequence_order(self):
        """Should fold several changes to one key by source sequence."""
        events = [image(3, 'h3'), image(1, 'h1'), image(2, 'h2')]
        stats = merge_type2(self.conn, DIM_CUSTOMER, events, DAY0)

        assert stats.inserted == 3
        history = load_histories(self.conn, DIM_CUSTOMER)['C1']
        assert history.current.record_hash == 'h3'
        assert check_dimension_invariants(self.conn, DIM_CUSTOMER) == []

    def test_same_day_supersede_keeps_invariants(self):
        """Should leave an empty interval for a version superseded on its first day."""
        merge_type2(self.conn, DIM_CUSTOMER, [image(1, 'h1')], DAY0)
        merge_type2(self.conn, DIM_CUSTOMER, [image(2, 'h2')], DAY0)

        assert self.versions()[0] == ('h1', DAY0, DAY0 - timedelta(days=1), False)
        assert check_dimension_invariants(self.conn, DIM_CUSTOMER) == []
        assert load_histories(self.conn, DIM_CUSTOMER)['C1'].as_of(DAY0).record_hash == 'h2'

    def test_as_of_lookup(self):
        """Should find the version whose interval contains a date."""
        merge_type2(self.conn, DIM_CUSTOMER, [image(1, 'h1')], DAY0)
        merge_type2(self.conn, DIM_CUSTOMER, [image(2, 'h2')], DAY0 + timedelta(days=5))
        history = load_histories(self.conn, DIM_CUSTOMER)['C1']

        assert history.as_of(DAY0 + timedelta(days=4)).record_hash == 'h1'
        assert history.as_of(DAY0 + timedelta(days=5)).record_hash == 'h2'
        assert history.as_of(DAY0 - timedelta(days=1)) is None

    def test_before_images_and_deletes_ignored(self):
        """Should skip before-images and count hard deletes without closing versions."""
        merge_type2(self.conn, DIM_CUSTOMER, [image(1, 'h1')], DAY0)
        before = ChangeEvent(
            'stg_customers', 'C1', AttributeBag({'record_hash': 'h1'}), ChangeKind.UPDATE, 2,
            is_update_pair=True, action=ACTION_DELETE
        )
        delete = ChangeEvent('stg_customers', 'C1', AttributeBag({}), ChangeKind.DELETE, 3, action=ACTION_DELETE)
        stats = merge_type2(self.conn, DIM_CUSTOMER, [before, delete], DAY0 + timedelta(days=1))

        assert stats.deletes_ignored == 1
        assert self.versions() == [('h1', DAY0, None, True)]

    def test_processing_date_before_current_version_raises(self):
        """Should refuse to write a version that starts before the current one."""
        merge_type2(self.conn, DIM_CUSTOMER, [image(1, 'h1')], DAY0)
        with pytest.raises(MergeInvariantViolation):
            merge_type2(self.conn, DIM_CUSTOMER, [image(2, 'h2')], DAY0 - timedelta(days=2))

    def test_two_current_rows_detected(self):
        """Should raise when a key already has more than one current row."""
        merge_type2(self.conn, DIM_CUSTOMER, [image(1, 'h1')], DAY0)
        self.conn.execute("""
            INSERT INTO dim_customer (customer_key, customer_id, record_hash, effective_date,
                                      is_current, created_at, updated_at)
            VALUES (999, 'C1', 'hx', DATE '2024-02-01', TRUE, now(), now())
        """)

        assert check_dimension_invariants(self.conn, DIM_CUSTOMER)
        with pytest.raises(MergeInvariantViolation):
            merge_type2(self.conn, DIM_CUSTOMER, [image(2, 'h2')], DAY0 + timedelta(days=1))


class TestMergeHalts:
    """Tests for halting and releasing dimension merges."""

    @pytest.fixture(autouse=True)
    def _conn(self, conn):
        self.conn = conn

    def test_halted_dimension_rejects_merges(self):
        """Should refuse to merge until an operator releases the halt."""
        assert halt_dimension(self.conn, 'dim_customer', 'manual')
        assert halt_dimension(self.conn, 'dim_customer', 'again') is False

        with pytest.raises(MergeInvariantViolation):
            merge_type2(self.conn, DIM_CUSTOMER, [image(1, 'h1')], DAY0)

        assert release_dimension(self.conn, 'dim_customer')
        assert merge_type2(self.conn, DIM_CUSTOMER, [image(1, 'h1')], DAY0).inserted == 1

    def test_failure_hook_halts_on_violation(self):
        """Should halt only for merge invariant violations."""
        halt_on_invariant_violation('load_dim_customer', RuntimeError('boom'), self.conn)
        assert not is_halted(self.conn, 'dim_customer')

        halt_on_invariant_violation(
            'load_dim_customer', MergeInvariantViolation('dim_customer', 'two current rows'), self.conn
        )
        assert is_halted(self.conn, 'dim_customer')


class TestProcessDimCustomer:
    """Tests for stream-driven Type 2 processing."""

    @pytest.fixture(autouse=True)
    def _conn(self, conn, changelog):
        self.conn = conn
        self.log = changelog

    def test_stream_changes_merged_and_offset_advanced(self):
        """Should merge pending changes and leave nothing pending."""
        self.log.record('stg_customers', 'C1', customer())
        self.log.record('stg_customers', 'C2', customer('C2'))

        stats = process_dim_customer(self.conn, DAY0)
        assert stats['inserted'] == 2
        assert not self.log.has_pending(DIM_CUSTOMER.stream_id)

        self.log.record('stg_customers', 'C1', customer(city='Buffalo'))
        stats = process_dim_customer(self.conn, DAY0 + timedelta(days=1))
        assert (stats['expired'], stats['inserted']) == (1, 1)

    def test_invalid_images_quarantined(self):
        """Should quarantine invalid images and still advance the stream."""
        self.log.record('stg_customers', 'C1', customer(email='broken'))
        stats = process_dim_customer(self.conn, DAY0)

        assert stats['rejected'] == 1 and stats['inserted'] == 0
        assert self.conn.fetchone("SELECT rule FROM quality_rejects")[0] == 'email_format_valid'
        assert not self.log.has_pending(DIM_CUSTOMER.stream_id)

    def test_failed_merge_keeps_offset(self):
        """Should roll back the batch and keep the offset when the merge fails."""
        self.log.record('stg_customers', 'C1', customer())
        halt_dimension(self.conn, 'dim_customer', 'repair pending')

        with pytest.raises(MergeInvariantViolation):
            process_dim_customer(self.conn, DAY0)
        assert self.log.has_pending(DIM_CUSTOMER.stream_id)
        assert self.conn.fetchone("SELECT COUNT(*) FROM quality_metrics")[0] == 0
