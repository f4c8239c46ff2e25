# agenda_agents/datastore.py
from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from .clock import clinic_tz
from .utils import parse_instant, to_calendar_date, to_decimal

OPS = ("eq", "neq", "gt", "gte", "lt", "lte", "in", "is_null", "not_null")


@dataclass(frozen=True)
class Filter:
    field: str
    op: str
    value: Any = None

    def __post_init__(self):
        if self.op not in OPS:
            raise ValueError(f"unsupported filter op {self.op!r}")


class DataStore(Protocol):
    def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        ...


class Identity(Protocol):
    def current_user_id(self) -> Optional[str]:
        ...

    def is_owner_role(self) -> bool:
        ...


@dataclass
class StaticIdentity:
    user_id: Optional[str] = None
    owner: bool = False

    def current_user_id(self) -> Optional[str]:
        return self.user_id

    def is_owner_role(self) -> bool:
        return bool(self.user_id) and self.owner


class EnvIdentity:
    """Identity for headless runs: CLINIC_USER_ID / CLINIC_USER_ROLE."""

    def current_user_id(self) -> Optional[str]:
        v = os.environ.get("CLINIC_USER_ID")
        if v is None or str(v).strip() == "":
            return None
        return str(v).strip()

    def is_owner_role(self) -> bool:
        return (os.environ.get("CLINIC_USER_ROLE") or "").strip().lower() == "owner"


def _coerce(row_value: Any, filter_value: Any) -> Any:
    # rows keep whatever shape the client wrote; compare on the filter's terms
    if isinstance(row_value, str):
        if isinstance(filter_value, datetime):
            return parse_instant(row_value, clinic_tz())
        if isinstance(filter_value, date):
            return to_calendar_date(row_value, clinic_tz())
        if isinstance(filter_value, (int, float, Decimal)) and not isinstance(filter_value, bool):
            return to_decimal(row_value)
    if isinstance(row_value, datetime) and isinstance(filter_value, datetime):
        return parse_instant(row_value, clinic_tz())
    return row_value


def _matches(row: Dict[str, Any], f: Filter) -> bool:
    raw = row.get(f.field)
    if f.op == "is_null":
        return raw is None
    if f.op == "not_null":
        return raw is not None
    if f.op == "in":
        return raw in set(f.value or ())
    if f.op == "eq":
        return raw == f.value
    if f.op == "neq":
        return raw != f.value

    value = _coerce(raw, f.value)
    if value is None:
        return False
    try:
        if f.op == "gt":
            return value > f.value
        if f.op == "gte":
            return value >= f.value
        if f.op == "lt":
            return value < f.value
        if f.op == "lte":
            return value <= f.value
    except TypeError:
        return False
    return False


class MemoryDataStore:
    """In-process store over dict rows; ``fail()`` makes a collection unreachable."""

    def __init__(self, collections: Optional[Dict[str, Iterable[Dict[str, Any]]]] = None):
        self._rows: Dict[str, List[Dict[str, Any]]] = {}
        self._failing: Dict[str, Exception] = {}
        for name, rows in (collections or {}).items():
            self.add(name, *rows)

    def add(self, collection: str, *rows: Dict[str, Any]) -> None:
        self._rows.setdefault(collection, []).extend(dict(r) for r in rows)

    def update(self, collection: str, row_id: Any, **changes: Any) -> int:
        n = 0
        for row in self._rows.get(collection, []):
            if row.get("id") == row_id:
                row.update(changes)
                n += 1
        return n

    def fail(self, collection: str, exc: Optional[Exception] = None) -> None:
        self._failing[collection] = exc or ConnectionError(f"{collection} unreachable")

    def recover(self, collection: str) -> None:
        self._failing.pop(collection, None)

    def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        if collection in self._failing:
            raise self._failing[collection]

        rows = [r for r in self._rows.get(collection, []) if all(_matches(r, f) for f in filters)]

        if order_by:
            field = order_by.lstrip("-")
            rows.sort(key=lambda r: (r.get(field) is None, str(r.get(field))), reverse=order_by.startswith("-"))
        if limit is not None:
            rows = rows[: int(limit)]
        return [dict(r) for r in rows]
