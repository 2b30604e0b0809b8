"""
In-memory stand-in for the document tables. The cursor answers SQL by
inspecting the statement text, like the other DB fakes in this suite.
"""
import copy
from contextlib import contextmanager

import psycopg

TABLES = (
    "opening_balances",
    "purchase_orders",
    "manufacturing_jobs",
    "audit_adjustments",
    "sale_orders",
    "web_orders",
    "settings",
    "skus",
)


class FakeStore:
    def __init__(self, **tables):
        # table -> list of (id, doc); list order is creation order.
        self.tables = {name: [(d["_id"], {k: v for k, v in d.items() if k != "_id"}) for d in docs] for name, docs in tables.items()}
        self.executed: list[str] = []
        self.fail_on_read: str = ""
        self.fail_update_ids: set = set()

    def doc(self, table: str, doc_id: str) -> dict:
        for i, d in self.tables.get(table, []):
            if i == doc_id:
                return d
        raise KeyError(doc_id)

    def conn(self):
        return FakeConn(self)

    def reads_of(self, table: str) -> int:
        return sum(1 for sql in self.executed if f"FROM {table}" in sql and not sql.lstrip().startswith("UPDATE"))


class FakeCursor:
    def __init__(self, store: FakeStore):
        self.store = store
        self._rows: list = []
        self.rowcount = -1

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        params = params or {}
        self.store.executed.append(sql)
        stripped = sql.lstrip()
        if stripped.startswith("UPDATE sale_orders"):
            return self._update_sale_line(params)
        if stripped.startswith("UPDATE manufacturing_jobs"):
            return self._patch_job(params)
        if stripped.startswith("UPDATE web_orders"):
            return self._replace_doc("web_orders", params)
        if stripped.startswith("SELECT 1"):
            self._rows = [{"ok": 1}]
            return
        for table in TABLES:
            if f"FROM {table}" not in sql:
                continue
            if self.store.fail_on_read and self.store.fail_on_read == table:
                raise psycopg.OperationalError("server closed the connection unexpectedly")
            self._rows = self._select(table, sql, params)
            return
        raise AssertionError(f"unexpected SQL: {sql}")

    def _select(self, table, sql, params):
        items = [(i, copy.deepcopy(d)) for i, d in self.store.tables.get(table, [])]
        if table == "settings":
            key = params.get("key")
            return [{"value": d.get("value")} for i, d in items if i == key or d.get("key") == key][:1]
        if "id = %(id)s" in sql:
            items = [(i, d) for i, d in items if i == params["id"]]
        if "id = ANY(%(ids)s)" in sql:
            items = [(i, d) for i, d in items if i in params["ids"]]
        if "id = ANY(%(order_ids)s)" in sql:
            items = [(i, d) for i, d in items if i in params["order_ids"]]
        if "OFFSET" in sql:
            items = items[params["skip"]: params["skip"] + params["limit"]]
        if "doc->>'category'" in sql:
            return [{"id": i, "category": d.get("category")} for i, d in items]
        return [{"id": i, "doc": d} for i, d in items]

    def _update_sale_line(self, params):
        if params["order_id"] in self.store.fail_update_ids:
            raise psycopg.DataError("invalid input syntax for type double precision")
        self.rowcount = 0
        doc = self.store.doc("sale_orders", params["order_id"])
        for line in doc.get("lineItems") or []:
            if line.get("_id") in [f.obj for f in params["line_forms"]]:
                if line.get("cost") != params["cost"]:
                    line["cost"] = params["cost"]
                    self.rowcount = 1
                return

    def _patch_job(self, params):
        if params["job_id"] in self.store.fail_update_ids:
            raise psycopg.DataError("invalid input syntax for type json")
        doc = self.store.doc("manufacturing_jobs", params["job_id"])
        patched = {**doc, **copy.deepcopy(params["patch"].obj)}
        self.rowcount = 0 if patched == doc else 1
        doc.update(patched)

    def _replace_doc(self, table, params):
        doc = self.store.doc(table, params["id"])
        doc.clear()
        doc.update(copy.deepcopy(params["doc"].obj))
        self.rowcount = 1

    def fetchall(self):
        return self._rows

    def fetchone(self):
        return self._rows[0] if self._rows else None


class FakeConn:
    def __init__(self, store: FakeStore):
        self.store = store

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def cursor(self):
        return FakeCursor(self.store)

    @contextmanager
    def transaction(self):
        yield
