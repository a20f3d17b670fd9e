"""
dim_date calendar dimension.

Keyed by integer YYYYMMDD. The window is kept populated around each
processing date and extended on demand when facts arrive with dates outside
it. Fiscal year runs July-June.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional

from retail_dwh.config import WAREHOUSE_CONFIG

logger = logging.getLogger(__name__)

WEEKDAY_NAMES = ['Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday']


def date_key(value) -> int:
    """YYYYMMDD integer for a date or datetime."""
    if isinstance(value, datetime):
        value = value.date()
    return value.year * 10000 + value.month * 100 + value.day


def _calendar_row(current: date) -> list:
    quarter = (current.month - 1) // 3 + 1
    day_of_week = current.isoweekday()
    fiscal_year = current.year + 1 if current.month >= 7 else current.year
    fiscal_quarter = ((current.month - 7) % 12) // 3 + 1
    return [
        date_key(current),
        current,
        day_of_week,
        WEEKDAY_NAMES[day_of_week - 1],
        current.day,
        current.timetuple().tm_yday,
        current.isocalendar()[1],
        current.month,
        current.strftime('%B'),
        quarter,
        f'Q{quarter}',
        current.year,
        day_of_week >= 6,
        fiscal_year,
        fiscal_quarter,
    ]


def _insert_rows(conn, rows: List[list]) -> int:
    if rows:
        conn.executemany("""
            INSERT INTO dim_date (
                date_key, full_date, day_of_week, day_name, day_of_month, day_of_year, week_of_year,
                month_number, month_name, quarter_number, quarter_name, year_number, is_weekend,
                fiscal_year, fiscal_quarter
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, rows)
    return len(rows)


def process_dim_date(
    conn,
    processing_date: Optional[date] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None
) -> Dict[str, int]:
    """
    Populate dim_date for [start_date, end_date].

    Defaults to the configured lookback/projection window around
    processing_date. Existing dates are left untouched.
    """
    stats = {'inserted': 0, 'unchanged': 0}
    processing_date = processing_date or date.today()
    min_date = start_date or processing_date - timedelta(days=WAREHOUSE_CONFIG['date_lookback_days'])
    max_date = end_date or processing_date + timedelta(days=WAREHOUSE_CONFIG['date_projection_days'])

    if min_date > max_date:
        return stats

    existing = {
        row[0] for row in conn.fetchall(
            "SELECT date_key FROM dim_date WHERE date_key BETWEEN ? AND ?",
            [date_key(min_date), date_key(max_date)]
        )
    }

    rows = []
    current = min_date
    while current <= max_date:
        if date_key(current) in existing:
            stats['unchanged'] += 1
        else:
            rows.append(_calendar_row(current))
        current += timedelta(days=1)

    stats['inserted'] = _insert_rows(conn, rows)

    logger.info(f"dim_date {min_date}..{max_date}: inserted={stats['inserted']}, unchanged={stats['unchanged']}")
    return stats


def ensure_dates(conn, dates: Iterable[date]) -> Dict[str, int]:
    """
    Add the given dates to dim_date if absent.

    Only the dates themselves are inserted, not the range between them.
    """
    wanted = sorted({d for d in dates if d is not None})
    if not wanted:
        return {'inserted': 0, 'unchanged': 0}

    placeholders = ','.join(['?'] * len(wanted))
    existing = {
        row[0] for row in conn.fetchall(
            f"SELECT date_key FROM dim_date WHERE date_key IN ({placeholders})",
            [date_key(d) for d in wanted]
        )
    }
    rows = [_calendar_row(d) for d in wanted if date_key(d) not in existing]
    stats = {'inserted': _insert_rows(conn, rows), 'unchanged': len(existing)}
    if stats['inserted']:
        logger.info(f"dim_date extended by {stats['inserted']} fact dates ({wanted[0]}..{wanted[-1]})")
    return stats
