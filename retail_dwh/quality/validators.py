"""Record-level validation rules for staging relations."""

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from retail_dwh.common.attributes import AttributeBag
from retail_dwh.common.exceptions import QualityViolation
from retail_dwh.config import (
    DQ_SUCCESS_THRESHOLD, DQ_WARNING_THRESHOLD, DQ_AMOUNT_TOLERANCE,
    DQ_MIN_QUANTITY, DQ_MAX_QUANTITY, DQ_VALID_PAYMENT_METHODS
)

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r'^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$')


@dataclass
class ValidationConfig:
    """Validation thresholds."""
    success_threshold: float = DQ_SUCCESS_THRESHOLD
    warning_threshold: float = DQ_WARNING_THRESHOLD
    amount_tolerance: Decimal = Decimal(str(DQ_AMOUNT_TOLERANCE))
    min_quantity: int = DQ_MIN_QUANTITY
    max_quantity: int = DQ_MAX_QUANTITY
    payment_methods: Tuple[str, ...] = field(default_factory=lambda: tuple(DQ_VALID_PAYMENT_METHODS))


@dataclass(frozen=True)
class ValidationOutcome:
    """Result of validating one record."""
    valid: bool
    invalid_reason: Optional[str] = None
    rule: Optional[str] = None


VALID = ValidationOutcome(True)

Rule = Callable[[AttributeBag, date, ValidationConfig], None]


def _require(record: AttributeBag, rule: str, *paths: str):
    for path in paths:
        value = record.get(path)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise QualityViolation(rule, f"{path} is null")


# ---------------------------------------------------------------------------
# stg_sales
# ---------------------------------------------------------------------------

def _sales_keys(record, as_of, config):
    _require(record, 'order_id_not_null', 'order_id')
    if record.get_int('order_line_id') is None:
        raise QualityViolation('order_line_id_not_null', "order_line_id is null or not an integer")


def _sales_references(record, as_of, config):
    _require(record, 'references_present', 'customer_id', 'product_id', 'store_id')


def _sales_quantity(record, as_of, config):
    quantity = record.get_int('quantity')
    if quantity is None:
        raise QualityViolation('quantity_in_range', "quantity is null or not an integer")
    if not config.min_quantity <= quantity <= config.max_quantity:
        raise QualityViolation(
            'quantity_in_range',
            f"quantity {quantity} outside {config.min_quantity}..{config.max_quantity}"
        )


def _sales_price(record, as_of, config):
    price = record.get_decimal('unit_price')
    if price is None:
        raise QualityViolation('unit_price_non_negative', "unit_price is null or not numeric")
    if price < 0:
        raise QualityViolation('unit_price_non_negative', f"unit_price {price} is negative")


def _sales_discount(record, as_of, config):
    if record.get('discount_percent') is None:
        return
    pct = record.get_decimal('discount_percent')
    if pct is None or not Decimal('0') <= pct <= Decimal('100'):
        raise QualityViolation('discount_pct_in_range', f"discount_percent {record.get('discount_percent')} outside 0..100")


def _sales_amount(record, as_of, config):
    total = record.get_decimal('total_amount')
    if total is None:
        return
    price = record.get_decimal('unit_price')
    quantity = record.get_int('quantity')
    pct = record.get_decimal('discount_percent') or Decimal('0')
    expected = price * quantity * (1 - pct / 100)
    if abs(total - expected) > config.amount_tolerance:
        raise QualityViolation(
            'amount_calculation',
            f"total_amount {total} differs from {expected.quantize(Decimal('0.01'))}"
        )


def _sales_payment(record, as_of, config):
    method = record.get_str('payment_method')
    if method is None:
        return
    if method not in config.payment_methods:
        raise QualityViolation('valid_payment_method', f"payment_method {method} not allowed")


def _sales_not_future(record, as_of, config):
    # Same accessor the fact loader reads the timestamp with
    txn_ts = record.get_datetime('transaction_date')
    if txn_ts is None:
        raise QualityViolation(
            'transaction_date_valid', f"transaction_date {record.get('transaction_date')!r} is null or unparseable"
        )
    txn_date = txn_ts.date()
    if txn_date > as_of:
        raise QualityViolation('transaction_not_future', f"transaction_date {txn_date} after {as_of}")


# ---------------------------------------------------------------------------
# stg_customers
# ---------------------------------------------------------------------------

def _customer_key(record, as_of, config):
    _require(record, 'customer_id_not_null', 'customer_id')


def _customer_email(record, as_of, config):
    email = record.get('email')
    if email is None:
        return
    if not isinstance(email, str) or not EMAIL_PATTERN.match(email):
        raise QualityViolation('email_format_valid', f"email {email!r} is malformed")


def _customer_registration(record, as_of, config):
    if record.get('registration_date') is None:
        return
    registered = record.get_date('registration_date')
    if registered is None:
        raise QualityViolation('registration_not_future', "registration_date is unparseable")
    if registered > as_of:
        raise QualityViolation('registration_not_future', f"registration_date {registered} after {as_of}")


def _customer_points(record, as_of, config):
    if record.get('loyalty_points') is None:
        return
    points = record.get_int('loyalty_points')
    if points is None or points < 0:
        raise QualityViolation('loyalty_points_non_negative', f"loyalty_points {record.get('loyalty_points')} invalid")


# ---------------------------------------------------------------------------
# stg_products / stg_stores / stg_clickstream
# ---------------------------------------------------------------------------

def _product_keys(record, as_of, config):
    _require(record, 'product_id_not_null', 'product_id')
    _require(record, 'product_name_not_null', 'product_name')


def _product_prices(record, as_of, config):
    price = record.get_decimal('unit_price')
    if price is None or price <= 0:
        raise QualityViolation('unit_price_positive', f"unit_price {record.get('unit_price')} must be positive")
    if record.get('unit_cost') is not None:
        cost = record.get_decimal('unit_cost')
        if cost is None or cost < 0:
            raise QualityViolation('unit_cost_non_negative', f"unit_cost {record.get('unit_cost')} invalid")


def _store_keys(record, as_of, config):
    _require(record, 'store_id_not_null', 'store_id')
    _require(record, 'store_name_not_null', 'store_name')


def _click_keys(record, as_of, config):
    _require(record, 'event_id_not_null', 'event_id')
    _require(record, 'event_type_not_null', 'event_type')
    if record.get_datetime('event_timestamp') is None:
        raise QualityViolation('event_timestamp_valid', "event_timestamp is null or unparseable")


def _click_duration(record, as_of, config):
    if record.get('duration_seconds') is None:
        return
    duration = record.get_int('duration_seconds')
    if duration is None or duration < 0:
        raise QualityViolation('duration_non_negative', f"duration_seconds {record.get('duration_seconds')} invalid")


RULES: Dict[str, List[Rule]] = {
    'stg_sales': [
        _sales_keys, _sales_references, _sales_quantity, _sales_price,
        _sales_discount, _sales_amount, _sales_payment, _sales_not_future,
    ],
    'stg_customers': [_customer_key, _customer_email, _customer_registration, _customer_points],
    'stg_products': [_product_keys, _product_prices],
    'stg_stores': [_store_keys],
    'stg_clickstream': [_click_keys, _click_duration],
}


class RecordValidator:
    """
    Pure per-record validator.

    Rules run in declaration order and the first failing rule decides the
    outcome. Relations without rules accept every record.
    """

    def __init__(self, config: ValidationConfig = None, rules: Dict[str, List[Rule]] = None):
        self.config = config or ValidationConfig()
        self.rules = rules if rules is not None else RULES

    def validate(
        self,
        relation: str,
        record: Union[AttributeBag, Mapping[str, Any]],
        as_of: Optional[date] = None
    ) -> ValidationOutcome:
        bag = record if isinstance(record, AttributeBag) else AttributeBag(record)
        as_of = as_of or date.today()

        for rule in self.rules.get(relation, []):
            try:
                rule(bag, as_of, self.config)
            except QualityViolation as violation:
                return ValidationOutcome(False, violation.reason, violation.rule)
        return VALID
