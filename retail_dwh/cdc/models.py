"""
Change event types.

An update on a tracked relation is recorded as a correlated pair: the old
image as a DELETE followed by the new image as an INSERT, both flagged
is_update_pair. A hard delete is a single DELETE without the flag.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from retail_dwh.common.attributes import AttributeBag


class ChangeKind(str, Enum):
    INSERT = 'INSERT'
    UPDATE = 'UPDATE'
    DELETE = 'DELETE'


ACTION_INSERT = 'INSERT'
ACTION_DELETE = 'DELETE'


@dataclass(frozen=True)
class ChangeEvent:
    relation: str
    natural_key: str
    payload: AttributeBag
    change_kind: ChangeKind
    sequence: int
    is_update_pair: bool = False
    action: str = ACTION_INSERT
    committed_at: Optional[datetime] = None

    @property
    def is_before_image(self) -> bool:
        return self.is_update_pair and self.action == ACTION_DELETE

    @property
    def is_insert_image(self) -> bool:
        return self.action == ACTION_INSERT

    @property
    def is_hard_delete(self) -> bool:
        return self.change_kind == ChangeKind.DELETE


@dataclass(frozen=True)
class StreamState:
    stream_id: str
    relation: str
    append_only: bool
    offset: int
