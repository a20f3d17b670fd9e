"""
dim_store dimension with SCD Type 1.
"""

from datetime import date
from typing import Any, Dict, Optional

from retail_dwh.common.attributes import AttributeBag
from .customer import region_for_state
from .definition import DimensionSpec, SCD_TYPE_1
from .merge import process_dimension

STORE_REGIONS = {
    'Northeast': ('NY', 'NJ', 'PA', 'MA', 'CT', 'RI', 'VT', 'NH', 'ME'),
    'West': ('CA', 'OR', 'WA', 'NV', 'AZ', 'CO', 'UT', 'HI', 'AK'),
    'South': ('TX', 'FL', 'GA', 'NC', 'VA', 'SC', 'AL', 'TN', 'LA', 'MS'),
    'Midwest': ('IL', 'OH', 'MI', 'IN', 'WI', 'MN', 'IA', 'MO', 'KS', 'NE'),
}


def derive_store(payload: AttributeBag, processing_date: date) -> Dict[str, Any]:
    state = payload.get_str('state')
    is_active = payload.get_bool('is_active')
    return {
        'store_name': payload.get_str('store_name'),
        'store_type': payload.get_str('store_type'),
        'store_format': payload.get_str('store_format'),
        'address': payload.get_str('address'),
        'city': payload.get_str('city'),
        'state': state,
        'postal_code': payload.get_str('postal_code'),
        'country': payload.get_str('country') or 'US',
        # Source region wins; otherwise derive from state
        'region': payload.get_str('region') or region_for_state(state, STORE_REGIONS),
        'latitude': payload.get_decimal('latitude'),
        'longitude': payload.get_decimal('longitude'),
        'manager_name': payload.get_str('manager_name'),
        'phone': payload.get_str('phone'),
        'email': payload.get_str('email'),
        'open_date': payload.get_date('open_date'),
        'close_date': payload.get_date('close_date'),
        'square_footage': payload.get_int('square_footage'),
        'is_active': True if is_active is None else is_active,
    }


DIM_STORE = DimensionSpec(
    name='dim_store',
    scd_type=SCD_TYPE_1,
    natural_key='store_id',
    surrogate_key='store_key',
    columns=[
        ('store_name', 'VARCHAR'),
        ('store_type', 'VARCHAR'),
        ('store_format', 'VARCHAR'),
        ('address', 'VARCHAR'),
        ('city', 'VARCHAR'),
        ('state', 'VARCHAR'),
        ('postal_code', 'VARCHAR'),
        ('country', 'VARCHAR'),
        ('region', 'VARCHAR'),
        ('latitude', 'DECIMAL(10,7)'),
        ('longitude', 'DECIMAL(10,7)'),
        ('manager_name', 'VARCHAR'),
        ('phone', 'VARCHAR'),
        ('email', 'VARCHAR'),
        ('open_date', 'DATE'),
        ('close_date', 'DATE'),
        ('square_footage', 'INTEGER'),
        ('is_active', 'BOOLEAN'),
    ],
    derive=derive_store,
    hash_fields=(
        'store_name', 'store_type', 'store_format', 'address', 'city', 'state',
        'postal_code', 'country', 'region', 'manager_name', 'open_date', 'close_date', 'is_active',
    ),
    source_relation='stg_stores',
    stream_id='stg_stores_stream',
    unknown_values={'store_name': 'Unknown', 'region': 'Other'},
)


def process_dim_store(conn, processing_date: date, task_name: Optional[str] = None) -> Dict[str, int]:
    """Process dim_store with SCD Type 1 from its change stream."""
    return process_dimension(conn, DIM_STORE, processing_date, task_name)
