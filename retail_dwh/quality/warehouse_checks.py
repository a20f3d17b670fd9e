"""
Warehouse-level data quality checks over the loaded star schema.

Each check counts offending rows and is logged to dq_check_log with a
PASS / WARNING / FAIL status. Checks only read warehouse tables.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class CheckResult:
    check_name: str
    table_name: str
    status: str  # 'PASS', 'WARNING', 'FAIL'
    error_count: int
    details: Optional[str] = None


def _count(conn, sql: str) -> int:
    return int(conn.fetchone(sql)[0] or 0)


def _result(check_name: str, table_name: str, count: int, failing_status: str, details: str) -> CheckResult:
    status = 'PASS' if count == 0 else failing_status
    return CheckResult(check_name, table_name, status, count, details if count else None)


def _fk_check(check_name: str, fact_table: str, key_column: str, dim_table: str, dim_key: str):
    def run(conn) -> CheckResult:
        count = _count(conn, f"""
            SELECT COUNT(*) FROM {fact_table} f
            LEFT JOIN {dim_table} d ON f.{key_column} = d.{dim_key}
            WHERE d.{dim_key} IS NULL
        """)
        return _result(check_name, fact_table, count, 'FAIL', f"{count} rows reference missing {dim_table} keys")
    return run


def check_unique_order_line(conn) -> CheckResult:
    count = _count(conn, """
        SELECT COUNT(*) FROM (
            SELECT order_id, order_line_id FROM fact_sales
            GROUP BY order_id, order_line_id HAVING COUNT(*) > 1
        )
    """)
    return _result('UNIQUE_ORDER_LINE', 'fact_sales', count, 'FAIL', f"{count} duplicated order lines")


def check_unique_click_event(conn) -> CheckResult:
    count = _count(conn, """
        SELECT COUNT(*) FROM (
            SELECT event_id FROM fact_clickstream GROUP BY event_id HAVING COUNT(*) > 1
        )
    """)
    return _result('UNIQUE_CLICK_EVENT', 'fact_clickstream', count, 'FAIL', f"{count} duplicated events")


def check_net_amount_positive(conn) -> CheckResult:
    count = _count(conn, "SELECT COUNT(*) FROM fact_sales WHERE net_amount < 0")
    return _result('NET_AMOUNT_POSITIVE', 'fact_sales', count, 'WARNING', f"{count} negative net amounts")


def check_measures_reconcile(conn) -> CheckResult:
    count = _count(conn, """
        SELECT COUNT(*) FROM fact_sales
        WHERE ABS(discount_amount + net_amount - gross_amount) > 0.01
    """)
    return _result('MEASURES_RECONCILE', 'fact_sales', count, 'FAIL', f"{count} rows where discount + net != gross")


def check_unresolved_members(conn) -> CheckResult:
    count = _count(conn, "SELECT COUNT(*) FROM reconciliation_log WHERE resolved_key IS NULL")
    return _result('UNRESOLVED_DIMENSION_MEMBERS', 'reconciliation_log', count, 'WARNING',
                   f"{count} fact keys still on the unknown member")


def _scd2_check(spec):
    def run(conn) -> CheckResult:
        count = _count(conn, f"""
            SELECT COUNT(*) FROM (
                SELECT {spec.natural_key} FROM {spec.name}
                GROUP BY {spec.natural_key}
                HAVING SUM(CASE WHEN is_current THEN 1 ELSE 0 END) <> 1
            )
        """)
        return _result('SCD2_ONE_CURRENT_PER_KEY', spec.name, count, 'FAIL',
                       f"{count} natural keys without exactly one current row")
    return run


def _scd1_check(spec):
    def run(conn) -> CheckResult:
        count = _count(conn, f"""
            SELECT COUNT(*) FROM (
                SELECT {spec.natural_key} FROM {spec.name}
                GROUP BY {spec.natural_key} HAVING COUNT(*) > 1
            )
        """)
        return _result('SCD1_ONE_ROW_PER_KEY', spec.name, count, 'FAIL', f"{count} natural keys with several rows")
    return run


def build_checks(dimensions: Iterable) -> list:
    checks = [
        _fk_check('FK_CUSTOMER_INTEGRITY', 'fact_sales', 'customer_key', 'dim_customer', 'customer_key'),
        _fk_check('FK_PRODUCT_INTEGRITY', 'fact_sales', 'product_key', 'dim_product', 'product_key'),
        _fk_check('FK_STORE_INTEGRITY', 'fact_sales', 'store_key', 'dim_store', 'store_key'),
        _fk_check('FK_DATE_INTEGRITY', 'fact_sales', 'date_key', 'dim_date', 'date_key'),
        _fk_check('FK_CLICK_DATE_INTEGRITY', 'fact_clickstream', 'date_key', 'dim_date', 'date_key'),
        check_unique_order_line,
        check_unique_click_event,
        check_net_amount_positive,
        check_measures_reconcile,
        check_unresolved_members,
    ]
    for spec in dimensions:
        checks.append(_scd2_check(spec) if spec.is_type2 else _scd1_check(spec))
    return checks


def run_warehouse_checks(conn, dimensions: Iterable) -> List[CheckResult]:
    """Run every check and append the results to dq_check_log."""
    run_ts = datetime.now()
    results = [check(conn) for check in build_checks(dimensions)]

    conn.executemany("""
        INSERT INTO dq_check_log (check_name, table_name, status, error_count, details, run_timestamp)
        VALUES (?, ?, ?, ?, ?, ?)
    """, [[r.check_name, r.table_name, r.status, r.error_count, r.details, run_ts] for r in results])

    failed = [r for r in results if r.status == 'FAIL']
    warned = [r for r in results if r.status == 'WARNING']
    if failed:
        logger.error(f"DQ checks failed: {[f'{r.table_name}.{r.check_name}={r.error_count}' for r in failed]}")
    elif warned:
        logger.warning(f"DQ checks with warnings: {[f'{r.table_name}.{r.check_name}={r.error_count}' for r in warned]}")
    else:
        logger.info(f"DQ checks passed: {len(results)}")
    return results
