"""
Shared fixtures.

FakeSupabase is a tiny in-memory stand-in for the supabase-py query
builder (table/select/eq/neq/gte/lte/in_/order/limit/range + insert/upsert/
update/execute), with per-table failure injection. It keeps real rows so
reconciliation can be run twice and the table state compared.
"""
from __future__ import annotations

import copy
import itertools
from typing import Any, Callable

import pytest
from postgrest.exceptions import APIError

from schedule_sync.security.allowlist import set_allowlist_override


class FakeResult:
    def __init__(self, data: list[dict]) -> None:
        self.data = data


class FakeQuery:
    def __init__(self, db: "FakeSupabase", table: str) -> None:
        self.db = db
        self.table_name = table
        self.op = "select"
        self.payload: Any = None
        self.on_conflict: str | None = None
        self.filters: list[Callable[[dict], bool]] = []
        self._order: tuple[str, bool] | None = None
        self._limit: int | None = None
        self._range: tuple[int, int] | None = None

    # -- reads / filters ------------------------------------------------
    def select(self, _columns: str = "*") -> "FakeQuery":
        return self

    def eq(self, col: str, value: Any) -> "FakeQuery":
        self.filters.append(lambda r: r.get(col) == value)
        return self

    def neq(self, col: str, value: Any) -> "FakeQuery":
        self.filters.append(lambda r: r.get(col) != value)
        return self

    def gte(self, col: str, value: Any) -> "FakeQuery":
        self.filters.append(lambda r: r.get(col) is not None and r.get(col) >= value)
        return self

    def lte(self, col: str, value: Any) -> "FakeQuery":
        self.filters.append(lambda r: r.get(col) is not None and r.get(col) <= value)
        return self

    def in_(self, col: str, values: list) -> "FakeQuery":
        allowed = list(values)
        self.filters.append(lambda r: r.get(col) in allowed)
        return self

    def order(self, col: str, desc: bool = False) -> "FakeQuery":
        self._order = (col, desc)
        return self

    def limit(self, n: int) -> "FakeQuery":
        self._limit = n
        return self

    def range(self, start: int, end: int) -> "FakeQuery":
        self._range = (start, end)
        return self

    # -- writes ---------------------------------------------------------
    def insert(self, payload: Any) -> "FakeQuery":
        self.op, self.payload = "insert", payload
        return self

    def upsert(self, payload: Any, on_conflict: str | None = None) -> "FakeQuery":
        self.op, self.payload, self.on_conflict = "upsert", payload, on_conflict
        return self

    def update(self, payload: dict) -> "FakeQuery":
        self.op, self.payload = "update", payload
        return self

    def _matches(self, row: dict) -> bool:
        return all(f(row) for f in self.filters)

    def execute(self) -> FakeResult:
        rows = self.db.tables.setdefault(self.table_name, [])
        self.db.calls.append((self.table_name, self.op, copy.deepcopy(self.payload)))
        failure = self.db.failures.get((self.table_name, self.op))
        if failure is not None:
            raise failure

        if self.op == "select":
            out = [copy.deepcopy(r) for r in rows if self._matches(r)]
            if self._order:
                col, desc = self._order
                out.sort(key=lambda r: str(r.get(col) or ""), reverse=desc)
            if self._limit is not None:
                out = out[: self._limit]
            if self._range is not None:
                start, end = self._range
                out = out[start:end + 1]
            return FakeResult(out)

        if self.op == "update":
            out = []
            for r in rows:
                if self._matches(r):
                    r.update(copy.deepcopy(self.payload))
                    out.append(copy.deepcopy(r))
            return FakeResult(out)

        items = self.payload if isinstance(self.payload, list) else [self.payload]
        out = []
        for item in items:
            item = copy.deepcopy(item)
            if self.op == "upsert" and self.on_conflict:
                keys = [k.strip() for k in self.on_conflict.split(",")]
                match = next((r for r in rows if all(r.get(k) == item.get(k) for k in keys)), None)
                if match is not None:
                    match.update(item)
                    out.append(copy.deepcopy(match))
                    continue
            self.db.check_unique(self.table_name, item)
            item.setdefault("id", f"{self.table_name}-{next(self.db.ids)}")
            rows.append(item)
            out.append(copy.deepcopy(item))
        return FakeResult(out)


class FakeSupabase:
    def __init__(self, unique: dict[str, tuple[str, ...]] | None = None) -> None:
        self.tables: dict[str, list[dict]] = {}
        self.calls: list[tuple[str, str, Any]] = []
        self.unique = unique or {}
        self.ids = itertools.count(1)
        self.failures: dict[tuple[str, str], Exception] = {}

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def seed(self, name: str, rows: list[dict]) -> None:
        self.tables.setdefault(name, []).extend(copy.deepcopy(rows))

    def fail_on(self, name: str, op: str, exc: Exception) -> None:
        """Make every `op` on table `name` raise `exc`."""
        self.failures[(name, op)] = exc

    def rows(self, name: str) -> list[dict]:
        return self.tables.get(name, [])

    def ops(self, name: str, op: str) -> list[Any]:
        return [payload for t, o, payload in self.calls if t == name and o == op]

    def check_unique(self, name: str, item: dict) -> None:
        cols = self.unique.get(name)
        if not cols:
            return
        for r in self.tables.get(name, []):
            if all(r.get(c) == item.get(c) for c in cols):
                raise APIError({
                    "message": "duplicate key value violates unique constraint",
                    "code": "23505",
                    "hint": None,
                    "details": None,
                })


@pytest.fixture
def fake_db() -> FakeSupabase:
    return FakeSupabase(unique={"schedule_allowed_domains": ("hostname",)})


@pytest.fixture(autouse=True)
def _reset_allowlist():
    yield
    set_allowlist_override(None)


@pytest.fixture
def allow_test_hosts():
    """TEST-NET hosts are "private" to ipaddress; trust them explicitly."""
    set_allowlist_override(["203.0.113.10", "203.0.113.20"])
