"""Operator reports over rejects, reconciliation, merge stats and quality metrics."""

import logging
from datetime import datetime
from typing import Optional

import pandas as pd

logger = logging.getLogger(__name__)


def rejects_report(conn, since: Optional[datetime] = None) -> pd.DataFrame:
    """Quarantined records grouped by relation and rule."""
    where, params = "", []
    if since is not None:
        where, params = "WHERE quarantined_at >= ?", [since]
    return conn.fetchdf(f"""
        SELECT relation, rule, COUNT(*) AS rejected,
               MIN(quarantined_at) AS first_seen,
               MAX(quarantined_at) AS last_seen,
               ANY_VALUE(reason) AS sample_reason
        FROM quality_rejects
        {where}
        GROUP BY relation, rule
        ORDER BY rejected DESC, relation, rule
    """, params)


def rejected_records(conn, relation: str, rule: Optional[str] = None, limit: int = 100) -> pd.DataFrame:
    if rule:
        return conn.fetchdf("""
            SELECT * FROM quality_rejects WHERE relation = ? AND rule = ?
            ORDER BY reject_id DESC LIMIT ?
        """, [relation, rule, limit])
    return conn.fetchdf(
        "SELECT * FROM quality_rejects WHERE relation = ? ORDER BY reject_id DESC LIMIT ?",
        [relation, limit]
    )


def reconciliation_report(conn, include_resolved: bool = False) -> pd.DataFrame:
    """Late-arriving dimension references, one row per fact key still (or once) pointing at -1."""
    where = "" if include_resolved else "WHERE resolved_key IS NULL"
    df = conn.fetchdf(f"""
        SELECT fact_table, dimension, key_column, natural_key,
               COUNT(*) AS fact_rows,
               MIN(first_seen_at) AS first_seen_at,
               MAX(resolved_at) AS resolved_at
        FROM reconciliation_log
        {where}
        GROUP BY fact_table, dimension, key_column, natural_key
        ORDER BY first_seen_at, fact_table, dimension
    """)
    if not df.empty:
        df['age_hours'] = (pd.Timestamp.now() - pd.to_datetime(df['first_seen_at'])).dt.total_seconds() / 3600
        df['age_hours'] = df['age_hours'].round(1)
    return df


def merge_stats_report(conn, dimension: Optional[str] = None, limit: int = 50) -> pd.DataFrame:
    if dimension:
        return conn.fetchdf(
            "SELECT * FROM merge_stats WHERE dimension = ? ORDER BY recorded_at DESC LIMIT ?",
            [dimension, limit]
        )
    return conn.fetchdf("SELECT * FROM merge_stats ORDER BY recorded_at DESC LIMIT ?", [limit])


def quality_report(conn, limit: int = 50) -> pd.DataFrame:
    return conn.fetchdf("""
        SELECT relation, stream_id, task_name, total_records, passed, failed,
               pass_rate, gate_status, violations, recorded_at
        FROM quality_metrics
        ORDER BY recorded_at DESC
        LIMIT ?
    """, [limit])
