"""
DWH ETL Module.

Maintains the retail star schema in DuckDB from CDC streams over staging.

Structure:
├── pipeline.py          - Task graph, bootstrap and run_etl entrypoint
├── resolver.py          - Natural key -> surrogate key lookups
├── dimensions/          - Dimension specs and SCD merges
│   ├── customer.py     - dim_customer (SCD2)
│   ├── product.py      - dim_product (SCD1)
│   ├── store.py        - dim_store (SCD1)
│   └── date.py         - dim_date
└── facts/              - Fact loaders
    ├── sales.py        - fact_sales
    ├── clickstream.py  - fact_clickstream
    └── reconcile.py    - late-arriving key repair

Storage: retail_dwh/storage/
"""

from .pipeline import run_etl, bootstrap_warehouse, build_task_graph, create_scheduler
from .resolver import SurrogateKeyResolver

__all__ = [
    'run_etl',
    'bootstrap_warehouse',
    'build_task_graph',
    'create_scheduler',
    'SurrogateKeyResolver',
]
