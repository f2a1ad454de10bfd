"""
In-memory stand-in for the Supabase client used by the integration services.

Supports the fluent subset the services call:
    client.table(name).select(cols, count=...).eq(...).gte(...).lte(...).lt(...)
          .order(col, desc=...).limit(n).execute()
    client.table(name).insert(row | rows).execute()
    client.table(name).update(fields).eq(...).execute()
    client.table(name).upsert(row | rows, on_conflict="a,b", ignore_duplicates=...).execute()
    client.table(name).delete().eq(...).execute()

Results expose `.data` and `.count` like postgrest's APIResponse.
"""

import copy
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional


@dataclass
class FakeResponse:
    data: list
    count: Optional[int] = None


def _comparable(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
    return value


class FakeQuery:
    def __init__(self, db: "FakeSupabase", table: str):
        self._db = db
        self._table = table
        self._action = "select"
        self._payload: Any = None
        self._filters: list = []
        self._order: Optional[tuple[str, bool]] = None
        self._limit: Optional[int] = None
        self._count: Optional[str] = None
        self._on_conflict: Optional[str] = None
        self._ignore_duplicates = False

    # Actions

    def select(self, columns: str = "*", count: Optional[str] = None) -> "FakeQuery":
        self._action = "select"
        self._count = count
        return self

    def insert(self, payload) -> "FakeQuery":
        self._action = "insert"
        self._payload = payload
        return self

    def update(self, payload: dict) -> "FakeQuery":
        self._action = "update"
        self._payload = payload
        return self

    def upsert(self, payload, on_conflict: str = "id", ignore_duplicates: bool = False) -> "FakeQuery":
        self._action = "upsert"
        self._payload = payload
        self._on_conflict = on_conflict
        self._ignore_duplicates = ignore_duplicates
        return self

    def delete(self) -> "FakeQuery":
        self._action = "delete"
        return self

    # Filters

    def eq(self, column: str, value: Any) -> "FakeQuery":
        self._filters.append(lambda row: row.get(column) == value)
        return self

    def gte(self, column: str, value: Any) -> "FakeQuery":
        self._filters.append(lambda row: row.get(column) is not None and _comparable(row[column]) >= _comparable(value))
        return self

    def lte(self, column: str, value: Any) -> "FakeQuery":
        self._filters.append(lambda row: row.get(column) is not None and _comparable(row[column]) <= _comparable(value))
        return self

    def lt(self, column: str, value: Any) -> "FakeQuery":
        self._filters.append(lambda row: row.get(column) is not None and _comparable(row[column]) < _comparable(value))
        return self

    def order(self, column: str, desc: bool = False) -> "FakeQuery":
        self._order = (column, desc)
        return self

    def limit(self, n: int) -> "FakeQuery":
        self._limit = n
        return self

    # Execution

    def _matches(self, row: dict) -> bool:
        return all(f(row) for f in self._filters)

    def execute(self) -> FakeResponse:
        self._db.calls.append((self._table, self._action))
        rows = self._db.tables.setdefault(self._table, [])

        if self._action == "insert":
            payload = self._payload if isinstance(self._payload, list) else [self._payload]
            inserted = []
            for item in payload:
                row = {"id": str(uuid.uuid4()), **copy.deepcopy(item)}
                rows.append(row)
                inserted.append(copy.deepcopy(row))
            return FakeResponse(data=inserted)

        if self._action == "upsert":
            payload = self._payload if isinstance(self._payload, list) else [self._payload]
            keys = [k.strip() for k in (self._on_conflict or "id").split(",")]
            written = []
            for item in payload:
                existing = next(
                    (r for r in rows if all(r.get(k) == item.get(k) for k in keys)),
                    None,
                )
                if existing is None:
                    row = {"id": str(uuid.uuid4()), **copy.deepcopy(item)}
                    rows.append(row)
                    written.append(copy.deepcopy(row))
                elif not self._ignore_duplicates:
                    existing.update(copy.deepcopy(item))
                    written.append(copy.deepcopy(existing))
            return FakeResponse(data=written)

        matched = [r for r in rows if self._matches(r)]

        if self._action == "update":
            for row in matched:
                row.update(copy.deepcopy(self._payload))
            return FakeResponse(data=copy.deepcopy(matched))

        if self._action == "delete":
            self._db.tables[self._table] = [r for r in rows if not self._matches(r)]
            return FakeResponse(data=copy.deepcopy(matched))

        if self._order:
            column, desc = self._order
            matched = sorted(matched, key=lambda r: _comparable(r.get(column) or ""), reverse=desc)
        count = len(matched) if self._count else None
        if self._limit is not None:
            matched = matched[: self._limit]
        return FakeResponse(data=copy.deepcopy(matched), count=count)


class FakeSupabase:
    def __init__(self):
        self.tables: dict[str, list[dict]] = {}
        self.calls: list[tuple[str, str]] = []

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rows(self, name: str) -> list[dict]:
        return self.tables.get(name, [])
