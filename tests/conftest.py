"""Shared fixtures: an in-memory warehouse with schema, tracked relations and streams."""
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from retail_dwh.cdc import ChangeLog
from retail_dwh.etl.warehouse.pipeline import bootstrap_warehouse
from retail_dwh.storage import Warehouse


@pytest.fixture
def warehouse():
    wh = Warehouse(':memory:')
    bootstrap_warehouse(wh)
    yield wh
    wh.close()


@pytest.fixture
def conn(warehouse):
    c = warehouse.connect()
    yield c
    c.close()


@pytest.fixture
def changelog(conn):
    return ChangeLog(conn)
