"""Unit tests for record-level validation rules."""
import pytest
import sys
import os
from datetime import date

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from factories import click, customer, product, sale, store
from retail_dwh.quality.validators import RecordValidator, ValidationConfig

AS_OF = date(2024, 3, 1)


class TestSalesRules:
    """Tests for stg_sales rules."""

    def setup_method(self):
        """Setup test fixtures."""
        self.validator = RecordValidator()

    def check(self, **overrides):
        return self.validator.validate('stg_sales', sale(**overrides), as_of=AS_OF)

    def test_valid_sale(self):
        """Should accept a complete order line."""
        outcome = self.check()
        assert outcome.valid
        assert outcome.rule is None

    def test_missing_order_id(self):
        """Should reject a null order_id."""
        assert self.check(order_id=None).rule == 'order_id_not_null'

    def test_blank_string_counts_as_null(self):
        """Should treat blank strings as missing."""
        assert self.check(order_id='  ').rule == 'order_id_not_null'

    def test_missing_reference(self):
        """Should reject a line with no store reference."""
        assert self.check(store_id=None).rule == 'references_present'

    @pytest.mark.parametrize('quantity', [0, -1, 1001, 'many'])
    def test_quantity_out_of_range(self, quantity):
        """Should reject quantities outside 1..1000."""
        assert self.check(quantity=quantity).rule == 'quantity_in_range'

    def test_negative_price(self):
        """Should reject a negative unit price."""
        assert self.check(unit_price='-1').rule == 'unit_price_non_negative'

    def test_discount_over_100(self):
        """Should reject discounts above 100 percent."""
        assert self.check(discount_percent='150').rule == 'discount_pct_in_range'

    def test_total_amount_must_reconcile(self):
        """Should reject a shipped total that disagrees with price x qty x discount."""
        assert self.check(total_amount='60.00').rule == 'amount_calculation'
        assert self.check(total_amount='53.97').valid

    def test_unknown_payment_method(self):
        """Should reject payment methods outside the allowed list."""
        assert self.check(payment_method='BARTER').rule == 'valid_payment_method'

    def test_future_transaction(self):
        """Should reject transactions after the processing date."""
        outcome = self.check(transaction_date='2024-03-02T00:00:00')
        assert outcome.rule == 'transaction_not_future'
        assert '2024-03-02' in outcome.invalid_reason

    def test_unparseable_transaction_date(self):
        """Should reject a transaction date that does not parse."""
        assert self.check(transaction_date='yesterday').rule == 'transaction_date_valid'

    def test_transaction_date_must_parse_as_timestamp(self):
        """Should reject a value whose date prefix parses but whose timestamp does not."""
        outcome = self.check(transaction_date='2024-03-01 10:15:00 UTC')
        assert outcome.rule == 'transaction_date_valid'
        assert self.check(transaction_date='2024-03-01').valid

    def test_first_failing_rule_wins(self):
        """Should report the first rule in declaration order."""
        assert self.check(order_id=None, quantity=0).rule == 'order_id_not_null'

    def test_config_thresholds(self):
        """Should honour a custom quantity range."""
        validator = RecordValidator(ValidationConfig(max_quantity=2))
        assert validator.validate('stg_sales', sale(), as_of=AS_OF).rule == 'quantity_in_range'


class TestDimensionSourceRules:
    """Tests for customer, product, store and clickstream rules."""

    def setup_method(self):
        """Setup test fixtures."""
        self.validator = RecordValidator()

    def test_valid_records(self):
        """Should accept complete records of every relation."""
        assert self.validator.validate('stg_customers', customer(), AS_OF).valid
        assert self.validator.validate('stg_products', product(), AS_OF).valid
        assert self.validator.validate('stg_stores', store(), AS_OF).valid
        assert self.validator.validate('stg_clickstream', click(), AS_OF).valid

    def test_malformed_email(self):
        """Should reject malformed email addresses."""
        outcome = self.validator.validate('stg_customers', customer(email='not-an-email'), AS_OF)
        assert outcome.rule == 'email_format_valid'

    def test_future_registration(self):
        """Should reject registrations after the processing date."""
        outcome = self.validator.validate('stg_customers', customer(registration_date='2030-01-01'), AS_OF)
        assert outcome.rule == 'registration_not_future'

    def test_negative_loyalty_points(self):
        """Should reject negative loyalty points."""
        outcome = self.validator.validate('stg_customers', customer(loyalty_points=-5), AS_OF)
        assert outcome.rule == 'loyalty_points_non_negative'

    def test_product_price_must_be_positive(self):
        """Should reject a zero list price."""
        outcome = self.validator.validate('stg_products', product(unit_price='0'), AS_OF)
        assert outcome.rule == 'unit_price_positive'

    def test_product_negative_cost(self):
        """Should reject a negative unit cost."""
        outcome = self.validator.validate('stg_products', product(unit_cost='-2'), AS_OF)
        assert outcome.rule == 'unit_cost_non_negative'

    def test_store_name_required(self):
        """Should reject stores without a name."""
        outcome = self.validator.validate('stg_stores', store(store_name=None), AS_OF)
        assert outcome.rule == 'store_name_not_null'

    def test_click_negative_duration(self):
        """Should reject negative durations."""
        outcome = self.validator.validate('stg_clickstream', click(duration_seconds=-3), AS_OF)
        assert outcome.rule == 'duration_non_negative'

    def test_click_bad_timestamp(self):
        """Should reject unparseable event timestamps."""
        outcome = self.validator.validate('stg_clickstream', click(event_timestamp='soon'), AS_OF)
        assert outcome.rule == 'event_timestamp_valid'

    def test_relation_without_rules_accepts_everything(self):
        """Should accept any record of a relation with no rules."""
        assert self.validator.validate('stg_other', {'anything': None}, AS_OF).valid
