"""
dim_customer dimension with SCD Type 2.

Compare columns: name, contact, segment, address, loyalty points.
"""

from datetime import date
from typing import Any, Dict, Optional

from retail_dwh.common.attributes import AttributeBag
from .definition import DimensionSpec, SCD_TYPE_2
from .merge import process_dimension

REGIONS = {
    'Northeast': ('NY', 'NJ', 'PA', 'MA', 'CT'),
    'West': ('CA', 'OR', 'WA', 'NV', 'AZ'),
    'South': ('TX', 'FL', 'GA', 'NC', 'VA'),
    'Midwest': ('IL', 'OH', 'MI', 'IN', 'WI'),
}


def age_group(date_of_birth: Optional[date], as_of: date) -> Optional[str]:
    if date_of_birth is None:
        return None
    years = as_of.year - date_of_birth.year
    if years < 25:
        return '18-24'
    if years < 35:
        return '25-34'
    if years < 45:
        return '35-44'
    if years < 55:
        return '45-54'
    if years < 65:
        return '55-64'
    return '65+'


def loyalty_tier(points: Optional[int]) -> str:
    points = points or 0
    if points >= 40000:
        return 'PLATINUM'
    if points >= 20000:
        return 'GOLD'
    if points >= 10000:
        return 'SILVER'
    return 'BRONZE'


def region_for_state(state: Optional[str], regions: Dict[str, tuple] = REGIONS) -> str:
    for region, states in regions.items():
        if state in states:
            return region
    return 'Other'


def derive_customer(payload: AttributeBag, processing_date: date) -> Dict[str, Any]:
    first_name = payload.get_str('first_name')
    last_name = payload.get_str('last_name')
    full_name = ' '.join(part for part in (first_name, last_name) if part) or None
    date_of_birth = payload.get_date('date_of_birth')
    points = payload.get_int('loyalty_points')
    state = payload.get_str('state')

    return {
        'first_name': first_name,
        'last_name': last_name,
        'full_name': full_name,
        'email': payload.get_str('email'),
        'phone': payload.get_str('phone'),
        'date_of_birth': date_of_birth,
        'gender': payload.get_str('gender'),
        'age_group': age_group(date_of_birth, processing_date),
        'registration_date': payload.get_date('registration_date'),
        'customer_segment': payload.get_str('customer_segment'),
        'loyalty_points': points,
        'loyalty_tier': loyalty_tier(points),
        'preferred_contact': payload.get_str('preferred_contact'),
        'is_active': payload.get_bool('is_active'),
        'address_line1': payload.get_str('address_line1'),
        'city': payload.get_str('city'),
        'state': state,
        'postal_code': payload.get_str('postal_code'),
        'country': payload.get_str('country'),
        'region': region_for_state(state),
    }


DIM_CUSTOMER = DimensionSpec(
    name='dim_customer',
    scd_type=SCD_TYPE_2,
    natural_key='customer_id',
    surrogate_key='customer_key',
    columns=[
        ('first_name', 'VARCHAR'),
        ('last_name', 'VARCHAR'),
        ('full_name', 'VARCHAR'),
        ('email', 'VARCHAR'),
        ('phone', 'VARCHAR'),
        ('date_of_birth', 'DATE'),
        ('gender', 'VARCHAR'),
        ('age_group', 'VARCHAR'),
        ('registration_date', 'DATE'),
        ('customer_segment', 'VARCHAR'),
        ('loyalty_points', 'INTEGER'),
        ('loyalty_tier', 'VARCHAR'),
        ('preferred_contact', 'VARCHAR'),
        ('is_active', 'BOOLEAN'),
        ('address_line1', 'VARCHAR'),
        ('city', 'VARCHAR'),
        ('state', 'VARCHAR'),
        ('postal_code', 'VARCHAR'),
        ('country', 'VARCHAR'),
        ('region', 'VARCHAR'),
    ],
    derive=derive_customer,
    hash_fields=(
        'first_name', 'last_name', 'email', 'phone', 'customer_segment',
        'address_line1', 'city', 'state', 'postal_code', 'loyalty_points',
    ),
    source_relation='stg_customers',
    stream_id='stg_customers_stream',
    unknown_values={'full_name': 'Unknown', 'region': 'Other'},
)


def process_dim_customer(conn, processing_date: date, task_name: Optional[str] = None) -> Dict[str, int]:
    """Process dim_customer with SCD Type 2 from its change stream."""
    return process_dimension(conn, DIM_CUSTOMER, processing_date, task_name)
