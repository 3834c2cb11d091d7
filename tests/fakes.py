"""
In-memory stand-ins for the backend client and the realtime transport.

FakeBackendClient keeps tables as lists of dicts and evaluates the same
chainable filters BackendClient builds, so code under test runs unchanged.
"""

import copy
import itertools
from collections import defaultdict

from backend.client import BackendError
from realtime.socket import RealtimeError


def _lookup(row, column):
    # "payload->>idempotency_key" reads a key inside a JSON column
    if "->>" in column:
        outer, inner = column.split("->>", 1)
        value = (row.get(outer) or {}).get(inner)
        return None if value is None else str(value)
    return row.get(column)


def _same(a, b):
    if a is None or b is None:
        return a is None and b is None
    return str(a) == str(b)


class FakeQuery:

    def __init__(self, client, table):
        self.client = client
        self.table_name = table
        self.filters = []
        self.order_by = None
        self.limit_count = None
        self.columns = "*"

    # --- filters ---

    def select(self, columns="*"):
        self.columns = columns
        return self

    def eq(self, column, value):
        self.filters.append(("eq", column, value))
        return self

    def in_(self, column, values):
        self.filters.append(("in", column, tuple(values)))
        return self

    def gte(self, column, value):
        self.filters.append(("gte", column, value))
        return self

    def lte(self, column, value):
        self.filters.append(("lte", column, value))
        return self

    def order(self, column, *, ascending=True):
        self.order_by = (column, ascending)
        return self

    def limit(self, count):
        self.limit_count = count
        return self

    def _matches(self, row):
        for op, column, value in self.filters:
            actual = _lookup(row, column)
            if op == "eq" and not _same(actual, value):
                return False
            if op == "in" and not any(_same(actual, v) for v in value):
                return False
            if op == "gte" and (actual is None or str(actual) < str(value)):
                return False
            if op == "lte" and (actual is None or str(actual) > str(value)):
                return False
        return True

    def _matching(self):
        return [row for row in self.client.tables[self.table_name] if self._matches(row)]

    # --- terminal calls ---

    def fetch(self):
        self.client.check("fetch", self.table_name)
        rows = [copy.deepcopy(row) for row in self._matching()]
        if self.order_by:
            column, ascending = self.order_by
            rows.sort(key=lambda r: (r.get(column) is None, r.get(column) or ""), reverse=not ascending)
        if self.limit_count is not None:
            rows = rows[:self.limit_count]
        return rows

    def single(self):
        rows = self.fetch()
        if len(rows) != 1:
            raise BackendError(f"Expected exactly one row, got {len(rows)}", code="PGRST116")
        return rows[0]

    def maybe_single(self):
        rows = self.fetch()
        if len(rows) > 1:
            raise BackendError(f"Expected at most one row, got {len(rows)}", code="PGRST116")
        return rows[0] if rows else None

    def update(self, values):
        self.client.check("update", self.table_name)
        self.client.writes.append(("update", self.table_name, dict(values), list(self.filters)))
        updated = []
        for row in self._matching():
            row.update(copy.deepcopy(values))
            updated.append(copy.deepcopy(row))
        return updated

    def insert(self, values):
        self.client.check("insert", self.table_name)
        rows = values if isinstance(values, list) else [values]
        inserted = []
        for row in rows:
            row = copy.deepcopy(row)
            row.setdefault("id", f"{self.table_name}-{next(self.client.ids)}")
            self.client.tables[self.table_name].append(row)
            self.client.writes.append(("insert", self.table_name, copy.deepcopy(row), []))
            inserted.append(copy.deepcopy(row))
        return inserted

    def upsert(self, values, *, on_conflict=None):
        self.client.check("upsert", self.table_name)
        key = on_conflict or "id"
        rows = values if isinstance(values, list) else [values]
        result = []
        for row in rows:
            self.client.writes.append(("upsert", self.table_name, copy.deepcopy(row), []))
            existing = next((r for r in self.client.tables[self.table_name] if _same(r.get(key), row.get(key))), None)
            if existing is not None:
                existing.update(copy.deepcopy(row))
                result.append(copy.deepcopy(existing))
            else:
                self.client.tables[self.table_name].append(copy.deepcopy(row))
                result.append(copy.deepcopy(row))
        return result

    def delete(self):
        self.client.check("delete", self.table_name)
        doomed = self._matching()
        table = self.client.tables[self.table_name]
        self.client.tables[self.table_name] = [r for r in table if r not in doomed]
        return copy.deepcopy(doomed)


class FakeBackendClient:
    """
    tables:      {"orders": [row, ...]}
    rpc_results: {"name": value or callable(params)}
    fail(op, table or rpc name, times=None): raise BackendError on the next `times` calls (None = always)
    """

    def __init__(self, tables=None, rpc_results=None):
        self.tables = defaultdict(list)
        for name, rows in (tables or {}).items():
            self.tables[name] = copy.deepcopy(rows)
        self.rpc_results = dict(rpc_results or {})
        self.rpc_calls = []
        self.writes = []
        self.ids = itertools.count(1)
        self._failures = {}

    def fail(self, op, target, times=None, message="boom"):
        self._failures[(op, target)] = [times, message]

    def check(self, op, target):
        entry = self._failures.get((op, target))
        if entry is None:
            return
        times, message = entry
        if times is not None:
            if times <= 0:
                return
            entry[0] = times - 1
        raise BackendError(f"{op} {target}: {message}", status_code=500)

    def table(self, name):
        return FakeQuery(self, name)

    def rpc(self, name, params=None):
        params = dict(params or {})
        self.rpc_calls.append((name, params))
        self.check("rpc", name)
        result = self.rpc_results.get(name)
        return result(params) if callable(result) else copy.deepcopy(result)

    def calls_to(self, name):
        return [params for rpc_name, params in self.rpc_calls if rpc_name == name]

    def writes_to(self, table, op=None):
        return [w for w in self.writes if w[1] == table and (op is None or w[0] == op)]


class FakeTransport:
    """
    Records joins/leaves; emit() plays an inbound postgres_changes payload.
    """

    def __init__(self, fail_join=False):
        self.fail_join = fail_join
        self.joined = {}
        self.configs = {}
        self.left = []

    def join(self, topic, postgres_changes, on_message):
        if self.fail_join:
            raise RealtimeError("join refused")
        self.joined[topic] = on_message
        self.configs[topic] = postgres_changes

    def leave(self, topic):
        self.joined.pop(topic, None)
        self.left.append(topic)

    def emit(self, topic, event_type, table, new=None, old=None):
        handler = self.joined[topic]
        handler({"eventType": event_type, "table": table, "new": new or {}, "old": old or {}})


class FakeClock:
    """
    Monotonic clock whose sleep() just advances time.
    """

    def __init__(self, start=0.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds):
        self.now += seconds
