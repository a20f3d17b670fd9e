"""
dim_product dimension with SCD Type 1 (overwrite on change).

`attributes` carries semi-structured product metadata (color, size, ...)
as JSON so new keys need no schema change.
"""

import json
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

from retail_dwh.common.attributes import AttributeBag
from .definition import DimensionSpec, SCD_TYPE_1
from .merge import process_dimension

CENT = Decimal('0.01')


def profit_margin(unit_price: Optional[Decimal], unit_cost: Optional[Decimal]) -> Decimal:
    """Margin percent of price, 0 when there is no positive price."""
    if unit_price is None or unit_price <= 0:
        return Decimal('0.00')
    cost = unit_cost or Decimal('0')
    return ((unit_price - cost) / unit_price * 100).quantize(CENT, rounding=ROUND_HALF_UP)


def derive_product(payload: AttributeBag, processing_date: date) -> Dict[str, Any]:
    unit_price = payload.get_decimal('unit_price')
    unit_cost = payload.get_decimal('unit_cost')
    attributes = payload.get_bag('attributes')
    is_active = payload.get_bool('is_active')

    return {
        'product_name': payload.get_str('product_name'),
        'description': payload.get_str('description'),
        'category': payload.get_str('category'),
        'subcategory': payload.get_str('subcategory'),
        'brand': payload.get_str('brand'),
        'unit_cost': unit_cost,
        'unit_price': unit_price,
        'profit_margin': profit_margin(unit_price, unit_cost),
        'weight_kg': payload.get_decimal('weight_kg'),
        'dimensions': payload.get_str('dimensions'),
        'is_active': True if is_active is None else is_active,
        'launch_date': payload.get_date('launch_date'),
        'discontinue_date': payload.get_date('discontinue_date'),
        'attributes': attributes.to_json() if attributes is not None else None,
    }


DIM_PRODUCT = DimensionSpec(
    name='dim_product',
    scd_type=SCD_TYPE_1,
    natural_key='product_id',
    surrogate_key='product_key',
    columns=[
        ('product_name', 'VARCHAR'),
        ('description', 'VARCHAR'),
        ('category', 'VARCHAR'),
        ('subcategory', 'VARCHAR'),
        ('brand', 'VARCHAR'),
        ('unit_cost', 'DECIMAL(10,2)'),
        ('unit_price', 'DECIMAL(10,2)'),
        ('profit_margin', 'DECIMAL(7,2)'),
        ('weight_kg', 'DECIMAL(8,3)'),
        ('dimensions', 'VARCHAR'),
        ('is_active', 'BOOLEAN'),
        ('launch_date', 'DATE'),
        ('discontinue_date', 'DATE'),
        ('attributes', 'VARCHAR'),
    ],
    derive=derive_product,
    hash_fields=(
        'product_name', 'description', 'category', 'subcategory', 'brand',
        'unit_cost', 'unit_price', 'weight_kg', 'dimensions', 'is_active',
        'launch_date', 'discontinue_date', 'attributes',
    ),
    source_relation='stg_products',
    stream_id='stg_products_stream',
    unknown_values={'product_name': 'Unknown', 'category': 'Unknown'},
)


def product_attribute(raw: Optional[str], path: str) -> Optional[Any]:
    """Read one value out of a stored attributes column ('color', 'specs.ram')."""
    if not raw:
        return None
    return AttributeBag(json.loads(raw)).get(path)


def process_dim_product(conn, processing_date: date, task_name: Optional[str] = None) -> Dict[str, int]:
    """Process dim_product with SCD Type 1 from its change stream."""
    return process_dimension(conn, DIM_PRODUCT, processing_date, task_name)
