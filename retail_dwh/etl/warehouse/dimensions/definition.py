"""
Declarative dimension definitions.

A DimensionSpec names the table, its SCD type, key columns, typed attribute
columns, how attributes derive from a source payload and which source fields
feed the change-detection hash. DDL and the unknown member row come from it.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Tuple

from retail_dwh.common.attributes import AttributeBag

logger = logging.getLogger(__name__)

SCD_TYPE_1 = 1
SCD_TYPE_2 = 2

UNKNOWN_MEMBER_KEY = -1
UNKNOWN_NATURAL_KEY = '__UNKNOWN__'
UNKNOWN_EFFECTIVE_DATE = date(1900, 1, 1)

Derivation = Callable[[AttributeBag, date], Dict[str, Any]]


def compute_record_hash(payload: AttributeBag, fields: Tuple[str, ...]) -> str:
    """MD5 over '|'-joined source fields, nulls as empty strings."""
    parts = []
    for name in fields:
        value = payload.get(name)
        if value is None:
            parts.append('')
        elif isinstance(value, (dict, list)):
            parts.append(json.dumps(value, sort_keys=True, default=str))
        else:
            parts.append(str(value))
    return hashlib.md5('|'.join(parts).encode('utf-8')).hexdigest()


@dataclass
class DimensionSpec:
    name: str
    scd_type: int
    natural_key: str
    surrogate_key: str
    columns: List[Tuple[str, str]]
    derive: Derivation
    hash_fields: Tuple[str, ...]
    source_relation: str
    stream_id: str
    unknown_values: Dict[str, Any] = field(default_factory=dict)

    @property
    def sequence_name(self) -> str:
        return f"seq_{self.name}_key"

    @property
    def is_type2(self) -> bool:
        return self.scd_type == SCD_TYPE_2

    @property
    def attribute_names(self) -> List[str]:
        return [name for name, _ in self.columns]

    def ddl(self) -> List[str]:
        attrs = ',\n    '.join(f"{name} {sql_type}" for name, sql_type in self.columns)
        scd_columns = ''
        if self.is_type2:
            scd_columns = """
    effective_date DATE NOT NULL,
    expiry_date DATE,
    is_current BOOLEAN NOT NULL,"""
        return [
            f"CREATE SEQUENCE IF NOT EXISTS {self.sequence_name} START 1",
            f"""CREATE TABLE IF NOT EXISTS {self.name} (
    {self.surrogate_key} BIGINT NOT NULL,
    {self.natural_key} VARCHAR NOT NULL,
    {attrs},
    record_hash VARCHAR,{scd_columns}
    source_sequence BIGINT,
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL
)""",
        ]

    def create_table(self, conn) -> bool:
        """Create table and sequence, and seed the unknown member row once."""
        for stmt in self.ddl():
            conn.execute(stmt)

        exists = conn.fetchone(
            f"SELECT 1 FROM {self.name} WHERE {self.surrogate_key} = ?", [UNKNOWN_MEMBER_KEY]
        )
        if exists:
            return False

        values = {
            self.surrogate_key: UNKNOWN_MEMBER_KEY,
            self.natural_key: UNKNOWN_NATURAL_KEY,
        }
        values.update({k: v for k, v in self.unknown_values.items() if k in self.attribute_names})
        if self.is_type2:
            values.update(effective_date=UNKNOWN_EFFECTIVE_DATE, expiry_date=None, is_current=True)
        now = datetime.now()
        values.update(created_at=now, updated_at=now)

        cols = list(values)
        conn.execute(
            f"INSERT INTO {self.name} ({', '.join(cols)}) VALUES ({', '.join(['?'] * len(cols))})",
            [values[c] for c in cols]
        )
        logger.info(f"{self.name}: seeded unknown member ({self.surrogate_key}={UNKNOWN_MEMBER_KEY})")
        return True

    def record_hash(self, payload: AttributeBag) -> str:
        """Hash from the source when it ships one, else computed from hash_fields."""
        shipped = payload.get_str('record_hash')
        if shipped:
            return shipped
        return compute_record_hash(payload, self.hash_fields)

    def attribute_values(self, payload: AttributeBag, processing_date: date) -> Dict[str, Any]:
        derived = self.derive(payload, processing_date)
        return {name: derived.get(name) for name in self.attribute_names}

    def mint_key(self, conn) -> int:
        return conn.fetchone(f"SELECT nextval('{self.sequence_name}')")[0]


@dataclass
class MergeStats:
    dimension: str
    scd_type: int
    processing_date: date
    inserted: int = 0
    expired: int = 0
    updated: int = 0
    unchanged: int = 0
    deletes_ignored: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            'inserted': self.inserted,
            'expired': self.expired,
            'updated': self.updated,
            'unchanged': self.unchanged,
            'deletes_ignored': self.deletes_ignored,
        }

    def persist(self, conn):
        conn.execute("""
            INSERT INTO merge_stats (
                dimension, scd_type, processing_date, inserted, expired, updated,
                unchanged, deletes_ignored, recorded_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [
            self.dimension, self.scd_type, self.processing_date, self.inserted, self.expired,
            self.updated, self.unchanged, self.deletes_ignored, datetime.now()
        ])

    def summary(self) -> str:
        return ', '.join(f"{k}={v}" for k, v in self.as_dict().items())


def fetch_by_keys(conn, spec: DimensionSpec, columns: str, keys: List[str], current_only: bool = False) -> List[tuple]:
    """Batch fetch dimension rows for a list of natural keys."""
    if not keys:
        return []
    placeholders = ','.join(['?'] * len(keys))
    current_filter = ' AND is_current = TRUE' if current_only else ''
    return conn.fetchall(f"""
        SELECT {columns} FROM {spec.name}
        WHERE {spec.natural_key} IN ({placeholders}){current_filter}
    """, keys)
