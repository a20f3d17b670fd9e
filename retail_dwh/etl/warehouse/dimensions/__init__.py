"""Dimension definitions and merge processors."""

from .definition import (
    DimensionSpec, MergeStats, SCD_TYPE_1, SCD_TYPE_2,
    UNKNOWN_MEMBER_KEY, UNKNOWN_NATURAL_KEY, compute_record_hash
)
from .invariants import (
    DimensionHistory, DimensionVersion, check_dimension_invariants, load_histories,
    ensure_dimension_writable, halt_dimension, release_dimension, is_halted,
    halt_on_invariant_violation
)
from .scd1 import merge_type1
from .scd2 import merge_type2
from .merge import process_dimension
from .customer import DIM_CUSTOMER, process_dim_customer
from .product import DIM_PRODUCT, process_dim_product
from .store import DIM_STORE, process_dim_store
from .date import process_dim_date, ensure_dates, date_key

DIMENSIONS = {
    DIM_CUSTOMER.name: DIM_CUSTOMER,
    DIM_PRODUCT.name: DIM_PRODUCT,
    DIM_STORE.name: DIM_STORE,
}

__all__ = [
    'DimensionSpec', 'MergeStats', 'SCD_TYPE_1', 'SCD_TYPE_2',
    'UNKNOWN_MEMBER_KEY', 'UNKNOWN_NATURAL_KEY', 'compute_record_hash',
    'DimensionHistory', 'DimensionVersion', 'check_dimension_invariants', 'load_histories',
    'ensure_dimension_writable', 'halt_dimension', 'release_dimension', 'is_halted',
    'halt_on_invariant_violation',
    'merge_type1', 'merge_type2', 'process_dimension',
    'DIM_CUSTOMER', 'DIM_PRODUCT', 'DIM_STORE', 'DIMENSIONS',
    'process_dim_customer', 'process_dim_product', 'process_dim_store',
    'process_dim_date', 'ensure_dates', 'date_key',
]
