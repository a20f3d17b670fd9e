"""
Change log and consumer streams over tracked relations.

Upstream mutations land in cdc_change_log with a global, strictly increasing
sequence. Each stream is one consumer of one relation and owns an offset (the
last consumed sequence). The offset moves only through commit(), inside the
consumer's own transaction, so a rolled back consumer rereads the same window.

Retention purges old events and raises the relation's horizon. A stream whose
offset is behind the horizon has lost events for good and refuses to read.
"""

import json
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Mapping, Optional, Union

import pandas as pd

from retail_dwh.common.attributes import AttributeBag
from retail_dwh.common.exceptions import (
    OffsetConflictError, StaleStreamError, StreamNotFoundError, WarehouseError
)
from retail_dwh.config import CDC_CONFIG
from retail_dwh.storage.duckdb_store import WarehouseConnection
from .models import ACTION_DELETE, ACTION_INSERT, ChangeEvent, ChangeKind, StreamState

logger = logging.getLogger(__name__)

_INSERTS_ONLY = "AND action = 'INSERT' AND NOT is_update"


class StreamWindow:
    """
    Unread window of a stream, bounded by the high-water mark captured when
    the read started. Iterating pages through the window lazily.
    """

    def __init__(self, changelog: 'ChangeLog', state: StreamState, end_offset: int, page_size: int):
        self.stream_id = state.stream_id
        self.relation = state.relation
        self.append_only = state.append_only
        self.start_offset = state.offset
        self.end_offset = end_offset
        self._changelog = changelog
        self._page_size = page_size

    def __iter__(self) -> Iterator[ChangeEvent]:
        last_seq = self.start_offset
        while last_seq < self.end_offset:
            page = self._changelog._fetch_page(
                self.relation, last_seq, self.end_offset, self.append_only, self._page_size
            )
            if not page:
                return
            for event in page:
                yield event
            last_seq = page[-1].sequence

    def __repr__(self) -> str:
        return f"StreamWindow({self.stream_id}, ({self.start_offset}, {self.end_offset}])"


class ChangeLog:
    """Change log operations bound to one warehouse connection."""

    def __init__(self, conn: WarehouseConnection, page_size: Optional[int] = None):
        self._conn = conn
        self._page_size = page_size or CDC_CONFIG['read_page_size']

    # ------------------------------------------------------------------
    # Upstream side
    # ------------------------------------------------------------------

    def track(self, relation: str, retention_days: Optional[int] = None, now: Optional[datetime] = None) -> bool:
        """Register a relation for change tracking. Returns False if already tracked."""
        if retention_days is None:
            retention_days = CDC_CONFIG['default_retention_days']

        existing = self._conn.fetchone(
            "SELECT retention_days FROM cdc_relations WHERE relation = ?", [relation]
        )
        if existing:
            if existing[0] != retention_days:
                self._conn.execute(
                    "UPDATE cdc_relations SET retention_days = ? WHERE relation = ?",
                    [retention_days, relation]
                )
            return False

        self._conn.execute("""
            INSERT INTO cdc_relations (relation, retention_days, horizon_seq, created_at)
            VALUES (?, ?, 0, ?)
        """, [relation, retention_days, now or datetime.now()])
        logger.info(f"Tracking {relation} (retention {retention_days}d)")
        return True

    def record(
        self,
        relation: str,
        natural_key: str,
        payload: Union[Mapping[str, Any], AttributeBag],
        committed_at: Optional[datetime] = None
    ) -> List[ChangeEvent]:
        """
        Land a committed upsert of one source row.

        New key -> INSERT. Changed payload -> DELETE(old) + INSERT(new) update
        pair. Identical payload -> nothing.
        """
        self._require_tracked(relation)
        natural_key = str(natural_key)
        bag = payload if isinstance(payload, AttributeBag) else AttributeBag(payload)
        new_json = bag.to_json()
        committed_at = committed_at or datetime.now()

        with self._conn.transaction():
            current = self._conn.fetchone("""
                SELECT payload FROM cdc_source_rows WHERE relation = ? AND natural_key = ?
            """, [relation, natural_key])

            if current is None:
                self._conn.execute("""
                    INSERT INTO cdc_source_rows (relation, natural_key, payload, updated_at)
                    VALUES (?, ?, ?, ?)
                """, [relation, natural_key, new_json, committed_at])
                return [self._append(relation, natural_key, new_json, ACTION_INSERT, False, committed_at)]

            if current[0] == new_json:
                return []

            self._conn.execute("""
                UPDATE cdc_source_rows SET payload = ?, updated_at = ?
                WHERE relation = ? AND natural_key = ?
            """, [new_json, committed_at, relation, natural_key])
            return [
                self._append(relation, natural_key, current[0], ACTION_DELETE, True, committed_at),
                self._append(relation, natural_key, new_json, ACTION_INSERT, True, committed_at),
            ]

    def record_delete(self, relation: str, natural_key: str, committed_at: Optional[datetime] = None) -> List[ChangeEvent]:
        """Land a hard delete of one source row."""
        self._require_tracked(relation)
        natural_key = str(natural_key)
        committed_at = committed_at or datetime.now()

        with self._conn.transaction():
            current = self._conn.fetchone("""
                SELECT payload FROM cdc_source_rows WHERE relation = ? AND natural_key = ?
            """, [relation, natural_key])
            if current is None:
                logger.debug(f"Delete of missing row {relation}/{natural_key} ignored")
                return []

            self._conn.execute(
                "DELETE FROM cdc_source_rows WHERE relation = ? AND natural_key = ?",
                [relation, natural_key]
            )
            return [self._append(relation, natural_key, current[0], ACTION_DELETE, False, committed_at)]

    def record_frame(
        self,
        relation: str,
        df: pd.DataFrame,
        key_column: str,
        committed_at: Optional[datetime] = None
    ) -> Dict[str, int]:
        """Land every row of a staging frame. Returns counts per action."""
        stats = {'inserted': 0, 'updated': 0, 'unchanged': 0}
        if df.empty:
            return stats

        # JSON round trip turns NaN into None and numpy scalars into plain values
        records = json.loads(df.to_json(orient='records', date_format='iso'))
        with self._conn.transaction():
            for row in records:
                key = row.get(key_column)
                if key is None:
                    continue
                events = self.record(relation, str(key), row, committed_at)
                if not events:
                    stats['unchanged'] += 1
                elif len(events) == 2:
                    stats['updated'] += 1
                else:
                    stats['inserted'] += 1

        logger.info(f"{relation}: inserted={stats['inserted']}, updated={stats['updated']}, unchanged={stats['unchanged']}")
        return stats

    def enforce_retention(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Purge events past each relation's retention and raise its horizon."""
        now = now or datetime.now()
        purged = {}

        with self._conn.transaction():
            relations = self._conn.fetchall("SELECT relation, retention_days FROM cdc_relations")
            for relation, retention_days in relations:
                cutoff = now - timedelta(days=retention_days)
                row = self._conn.fetchone("""
                    SELECT COUNT(*), MAX(seq) FROM cdc_change_log
                    WHERE relation = ? AND committed_at < ?
                """, [relation, cutoff])
                count, max_seq = row
                if not count:
                    continue

                self._conn.execute(
                    "DELETE FROM cdc_change_log WHERE relation = ? AND committed_at < ?",
                    [relation, cutoff]
                )
                self._conn.execute("""
                    UPDATE cdc_relations SET horizon_seq = GREATEST(horizon_seq, ?)
                    WHERE relation = ?
                """, [max_seq, relation])
                purged[relation] = count
                logger.info(f"Retention: purged {count} events from {relation}, horizon={max_seq}")

        return purged

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def create_stream(self, stream_id: str, relation: str, append_only: bool = False, replace: bool = False) -> StreamState:
        """
        Create a stream positioned at the relation's current high-water mark.
        An existing stream is kept as is unless replace is set.
        """
        self._require_tracked(relation)
        existing = self._stream_row(stream_id)
        if existing and not replace:
            return existing

        now = datetime.now()
        offset = self.high_water_mark(relation)
        with self._conn.transaction():
            if existing:
                self._conn.execute("DELETE FROM cdc_streams WHERE stream_id = ?", [stream_id])
            self._conn.execute("""
                INSERT INTO cdc_streams (stream_id, relation, append_only, stream_offset, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, [stream_id, relation, append_only, offset, now, now])

        logger.info(f"Created stream {stream_id} on {relation} at offset {offset} (append_only={append_only})")
        return StreamState(stream_id, relation, append_only, offset)

    def rebuild_stream(self, stream_id: str) -> StreamState:
        """Manual recovery for a stale stream: restart at the current high-water mark."""
        state = self.get_stream(stream_id)
        offset = self.high_water_mark(state.relation)
        self._conn.execute("""
            UPDATE cdc_streams SET stream_offset = ?, updated_at = ? WHERE stream_id = ?
        """, [offset, datetime.now(), stream_id])
        logger.warning(
            f"Rebuilt stream {stream_id}: offset {state.offset} -> {offset}; "
            f"events in between must be backfilled from the source"
        )
        return StreamState(stream_id, state.relation, state.append_only, offset)

    def get_stream(self, stream_id: str) -> StreamState:
        state = self._stream_row(stream_id)
        if state is None:
            raise StreamNotFoundError(f"Unknown stream {stream_id}")
        return state

    def high_water_mark(self, relation: str) -> int:
        row = self._conn.fetchone("""
            SELECT GREATEST(
                (SELECT COALESCE(MAX(horizon_seq), 0) FROM cdc_relations WHERE relation = ?),
                (SELECT COALESCE(MAX(seq), 0) FROM cdc_change_log WHERE relation = ?)
            )
        """, [relation, relation])
        return int(row[0] or 0)

    def has_pending(self, stream_id: str) -> bool:
        state = self._checked_stream(stream_id)
        filter_sql = _INSERTS_ONLY if state.append_only else ''
        row = self._conn.fetchone(f"""
            SELECT 1 FROM cdc_change_log
            WHERE relation = ? AND seq > ? {filter_sql}
            LIMIT 1
        """, [state.relation, state.offset])
        return row is not None

    def read(self, stream_id: str) -> StreamWindow:
        """
        Open the unread window of a stream.

        Staleness is checked here, before any event is produced, and the
        window end is fixed now: events landing later wait for the next read.
        """
        state = self._checked_stream(stream_id)
        end_offset = self.high_water_mark(state.relation)
        return StreamWindow(self, state, end_offset, self._page_size)

    def commit(self, stream_id: str, upto_offset: int, expected_offset: Optional[int] = None) -> int:
        """
        Advance a stream's offset inside the caller's transaction.

        Compare-and-swap against expected_offset; moving backwards is rejected.
        """
        state = self._checked_stream(stream_id)

        if expected_offset is not None and state.offset != expected_offset:
            raise OffsetConflictError(
                f"Stream {stream_id} offset moved: expected {expected_offset}, found {state.offset}"
            )
        if upto_offset < state.offset:
            raise WarehouseError(
                f"Stream {stream_id} cannot move backwards from {state.offset} to {upto_offset}"
            )
        high_water = self.high_water_mark(state.relation)
        if upto_offset > high_water:
            raise WarehouseError(
                f"Stream {stream_id} cannot move past high-water mark {high_water} (requested {upto_offset})"
            )
        if upto_offset == state.offset:
            return upto_offset

        self._conn.execute("""
            UPDATE cdc_streams SET stream_offset = ?, updated_at = ? WHERE stream_id = ?
        """, [upto_offset, datetime.now(), stream_id])
        logger.debug(f"Stream {stream_id}: offset {state.offset} -> {upto_offset}")
        return upto_offset

    @contextmanager
    def consume(self, stream_id: str) -> Iterator[StreamWindow]:
        """
        Read -> process -> advance as one atomic unit.

        The offset is committed only when the block exits cleanly, in the same
        transaction as whatever the block wrote.
        """
        with self._conn.transaction():
            window = self.read(stream_id)
            yield window
            self.commit(stream_id, window.end_offset, expected_offset=window.start_offset)

    def stream_status(self) -> pd.DataFrame:
        """Offset, high-water mark, pending count, horizon and stale flag per stream."""
        return self._conn.fetchdf("""
            WITH hw AS (
                SELECT r.relation, r.horizon_seq,
                       GREATEST(r.horizon_seq, COALESCE(MAX(l.seq), 0)) AS high_water
                FROM cdc_relations r
                LEFT JOIN cdc_change_log l ON l.relation = r.relation
                GROUP BY r.relation, r.horizon_seq
            )
            SELECT s.stream_id, s.relation, s.append_only,
                   s.stream_offset AS "offset",
                   hw.high_water,
                   (SELECT COUNT(*) FROM cdc_change_log l
                    WHERE l.relation = s.relation AND l.seq > s.stream_offset
                      AND (NOT s.append_only OR (l.action = 'INSERT' AND NOT l.is_update))) AS pending,
                   hw.horizon_seq AS horizon,
                   s.stream_offset < hw.horizon_seq AS stale,
                   s.updated_at
            FROM cdc_streams s
            JOIN hw ON hw.relation = s.relation
            ORDER BY s.stream_id
        """)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_tracked(self, relation: str):
        row = self._conn.fetchone("SELECT 1 FROM cdc_relations WHERE relation = ?", [relation])
        if row is None:
            raise WarehouseError(f"Relation {relation} is not tracked")

    def _append(
        self,
        relation: str,
        natural_key: str,
        payload_json: str,
        action: str,
        is_update: bool,
        committed_at: datetime
    ) -> ChangeEvent:
        seq = self._conn.fetchone("SELECT nextval('seq_change_event')")[0]
        self._conn.execute("""
            INSERT INTO cdc_change_log (seq, relation, natural_key, action, is_update, payload, committed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, [seq, relation, natural_key, action, is_update, payload_json, committed_at])
        return _to_event(relation, natural_key, action, is_update, payload_json, seq, committed_at)

    def _stream_row(self, stream_id: str) -> Optional[StreamState]:
        row = self._conn.fetchone("""
            SELECT stream_id, relation, append_only, stream_offset FROM cdc_streams WHERE stream_id = ?
        """, [stream_id])
        if row is None:
            return None
        return StreamState(row[0], row[1], bool(row[2]), int(row[3]))

    def _checked_stream(self, stream_id: str) -> StreamState:
        state = self.get_stream(stream_id)
        horizon = self._conn.fetchone(
            "SELECT horizon_seq FROM cdc_relations WHERE relation = ?", [state.relation]
        )[0]
        if state.offset < horizon:
            raise StaleStreamError(stream_id, state.offset, horizon)
        return state

    def _fetch_page(self, relation: str, after_seq: int, end_offset: int, append_only: bool, limit: int) -> List[ChangeEvent]:
        filter_sql = _INSERTS_ONLY if append_only else ''
        rows = self._conn.fetchall(f"""
            SELECT seq, natural_key, action, is_update, payload, committed_at
            FROM cdc_change_log
            WHERE relation = ? AND seq > ? AND seq <= ? {filter_sql}
            ORDER BY seq
            LIMIT ?
        """, [relation, after_seq, end_offset, limit])
        return [
            _to_event(relation, natural_key, action, is_update, payload, seq, committed_at)
            for seq, natural_key, action, is_update, payload, committed_at in rows
        ]


def _to_event(relation, natural_key, action, is_update, payload_json, seq, committed_at) -> ChangeEvent:
    if is_update:
        kind = ChangeKind.UPDATE
    elif action == ACTION_DELETE:
        kind = ChangeKind.DELETE
    else:
        kind = ChangeKind.INSERT
    return ChangeEvent(
        relation=relation,
        natural_key=natural_key,
        payload=AttributeBag.from_json(payload_json),
        change_kind=kind,
        sequence=int(seq),
        is_update_pair=bool(is_update),
        action=action,
        committed_at=committed_at,
    )
