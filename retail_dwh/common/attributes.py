"""
Semi-structured attribute bags.

Change payloads arrive without a static schema, so every typed accessor is
fallible: a missing key or a value of the wrong type yields None instead of
raising. Dotted paths reach into nested maps ("address.city").
"""

import json
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterator, Mapping, Optional

_MISSING = object()


def _json_default(value: Any) -> str:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


class AttributeBag(Mapping):
    """Read-only key/value map with nested values and fallible typed getters."""

    def __init__(self, data: Optional[Mapping[str, Any]] = None):
        self._data: Dict[str, Any] = dict(data or {})

    @classmethod
    def from_json(cls, raw: Optional[str]) -> 'AttributeBag':
        if not raw:
            return cls()
        return cls(json.loads(raw))

    def to_json(self) -> str:
        return json.dumps(self._data, default=_json_default, sort_keys=True, ensure_ascii=False)

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._data)

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"AttributeBag({self._data!r})"

    def get(self, path: str, default: Any = None) -> Any:
        """Return the raw value at a dotted path, or default."""
        node: Any = self._data
        for part in path.split('.'):
            if not isinstance(node, Mapping):
                return default
            node = node.get(part, _MISSING)
            if node is _MISSING:
                return default
        return node

    def get_str(self, path: str) -> Optional[str]:
        value = self.get(path)
        if isinstance(value, str):
            return value
        if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
            return str(value)
        return None

    def get_int(self, path: str) -> Optional[int]:
        value = self.get(path)
        if isinstance(value, bool) or value is None:
            return None
        if isinstance(value, int):
            return value
        if isinstance(value, float):
            return int(value) if value.is_integer() else None
        if isinstance(value, Decimal):
            return int(value) if value == value.to_integral_value() else None
        if isinstance(value, str):
            try:
                return int(value.strip())
            except ValueError:
                return None
        return None

    def get_decimal(self, path: str) -> Optional[Decimal]:
        value = self.get(path)
        if isinstance(value, bool) or value is None:
            return None
        if isinstance(value, Decimal):
            return value
        if isinstance(value, (int, float, str)):
            try:
                result = Decimal(str(value).strip())
            except InvalidOperation:
                return None
            return result if result.is_finite() else None
        return None

    def get_bool(self, path: str) -> Optional[bool]:
        value = self.get(path)
        if isinstance(value, bool):
            return value
        if isinstance(value, int) and value in (0, 1):
            return bool(value)
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in ('true', 't', 'yes', 'y', '1'):
                return True
            if lowered in ('false', 'f', 'no', 'n', '0'):
                return False
        return None

    def get_date(self, path: str) -> Optional[date]:
        value = self.get(path)
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        if isinstance(value, str):
            try:
                return date.fromisoformat(value.strip()[:10])
            except ValueError:
                return None
        return None

    def get_datetime(self, path: str) -> Optional[datetime]:
        value = self.get(path)
        if isinstance(value, datetime):
            return value
        if isinstance(value, date):
            return datetime(value.year, value.month, value.day)
        if isinstance(value, str):
            text = value.strip()
            if text.endswith('Z'):
                text = text[:-1] + '+00:00'
            try:
                return datetime.fromisoformat(text)
            except ValueError:
                return None
        return None

    def get_bag(self, path: str) -> Optional['AttributeBag']:
        value = self.get(path)
        if isinstance(value, Mapping):
            return AttributeBag(value)
        return None
