"""
DuckDB warehouse storage.

One root connection per warehouse file; every task attempt works on its own
cursor (a separate DuckDB connection sharing the same database) so that
independent tasks can hold independent transactions.
"""

import logging
import os
import re
import threading
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, List, Optional, Sequence

import duckdb
import pandas as pd

from retail_dwh.config import WAREHOUSE_CONFIG

logger = logging.getLogger(__name__)

DEFAULT_SCHEMA_PATH = os.path.join(
    os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'sql', 'warehouse_schema.sql'
)


class WarehouseConnection:
    """
    Thin wrapper over a DuckDB cursor that tracks transaction nesting.

    `transaction()` is reentrant: an inner block joins the transaction that is
    already open, so a stream commit and a merge share one atomic unit.
    """

    def __init__(self, raw: duckdb.DuckDBPyConnection):
        self._raw = raw
        self._depth = 0

    @property
    def raw(self) -> duckdb.DuckDBPyConnection:
        return self._raw

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def execute(self, sql: str, params: Optional[Sequence[Any]] = None):
        if params is None:
            return self._raw.execute(sql)
        return self._raw.execute(sql, params)

    def executemany(self, sql: str, rows: List[Sequence[Any]]):
        if not rows:
            return None
        return self._raw.executemany(sql, rows)

    def fetchdf(self, sql: str, params: Optional[Sequence[Any]] = None) -> pd.DataFrame:
        return self.execute(sql, params).fetchdf()

    def fetchone(self, sql: str, params: Optional[Sequence[Any]] = None):
        return self.execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[tuple]:
        return self.execute(sql, params).fetchall()

    def begin(self):
        self._raw.execute("BEGIN TRANSACTION")
        self._depth = 1

    def commit(self):
        self._raw.execute("COMMIT")
        self._depth = 0

    def rollback(self):
        self._depth = 0
        self._raw.execute("ROLLBACK")

    @contextmanager
    def transaction(self) -> Iterator['WarehouseConnection']:
        if self._depth > 0:
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
            return

        self.begin()
        try:
            yield self
        except BaseException:
            self.rollback()
            raise
        self.commit()

    def interrupt(self):
        """Abort the statement currently running on this cursor."""
        self._raw.interrupt()

    def close(self):
        self._raw.close()


def get_duckdb_connection(local_path: Optional[str] = None) -> duckdb.DuckDBPyConnection:
    """Open the warehouse DuckDB file, creating its directory when needed."""
    if local_path is None:
        local_path = WAREHOUSE_CONFIG['duckdb_path']
    if local_path != ':memory:':
        os.makedirs(os.path.dirname(os.path.abspath(local_path)), exist_ok=True)
    return duckdb.connect(local_path)


def _read_statements(schema_path: str) -> List[str]:
    with open(schema_path, 'r', encoding='utf-8') as f:
        sql = f.read()

    # Block comments first: their ruler lines start with '--'
    sql = re.sub(r'/\*.*?\*/', '', sql, flags=re.DOTALL)
    sql = re.sub(r'--.*\n', '\n', sql)
    return [s.strip() for s in sql.split(';') if s.strip()]


def setup_schema(
    conn: WarehouseConnection,
    dimensions: Iterable[Any] = (),
    schema_path: str = DEFAULT_SCHEMA_PATH
) -> bool:
    """
    Create warehouse tables if they don't exist.
    Does NOT drop existing tables to preserve data.

    Each dimension spec creates its own table, sequence and unknown member row.
    """
    statements = _read_statements(schema_path)
    for stmt in statements:
        conn.execute(stmt)

    created = []
    for dimension in dimensions:
        dimension.create_table(conn)
        created.append(dimension.name)

    logger.info(f"Schema setup complete: {len(statements)} statements, dimensions={created}")
    return True


class Warehouse:
    """A DuckDB warehouse file (or ':memory:') handing out per-task cursors."""

    def __init__(self, path: Optional[str] = None):
        self.path = path or WAREHOUSE_CONFIG['duckdb_path']
        self._root = get_duckdb_connection(self.path)
        self._lock = threading.Lock()
        self._closed = False

    def connect(self) -> WarehouseConnection:
        with self._lock:
            return WarehouseConnection(self._root.cursor())

    def setup(self, dimensions: Iterable[Any] = ()) -> bool:
        conn = self.connect()
        try:
            return setup_schema(conn, dimensions)
        finally:
            conn.close()

    def checkpoint(self):
        with self._lock:
            self._root.execute("CHECKPOINT")

    def close(self):
        if self._closed:
            return
        self._closed = True
        self._root.close()
        logger.info(f"Closed warehouse {self.path}")

    def __enter__(self) -> 'Warehouse':
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
