"""
Document collections on Postgres.

Every collection is a `(id text, doc jsonb, created_at timestamptz)` table
(see backend/db/migrations/001_documents.sql). Reads return plain dicts shaped
like the stored documents, with `_id` always set from the row id.

Reference fields are matched against `identifier_forms(...)`: either the field
itself equals one of the forms (bare id / typed id) or its embedded `_id` does.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional

import psycopg
from psycopg.types.json import Jsonb

from .cost_index import CostSources
from .movements import SkuActivity, parse_dt
from .refs import identifier_forms

GLOBAL_START_DATE_KEY = "filterDataFrom"


def _ref_match(expr: str) -> str:
    return f"({expr} = ANY(%(forms)s) OR {expr}->'_id' = ANY(%(forms)s))"


def _array(expr: str) -> str:
    return f"(CASE WHEN jsonb_typeof({expr}) = 'array' THEN {expr} ELSE '[]'::jsonb END)"


def _line_match(doc_expr: str, *fields: str) -> str:
    items = _array(f"{doc_expr}->'lineItems'")
    conds = " OR ".join(_ref_match(f"li->'{f}'") for f in fields)
    return f"EXISTS (SELECT 1 FROM jsonb_array_elements({items}) AS li WHERE {conds})"


def _forms_param(ids: Iterable[Any]) -> list[Jsonb]:
    return [Jsonb(f) for f in identifier_forms(ids)]


def _rows_to_docs(rows) -> list[dict]:
    out = []
    for r in rows or []:
        doc = dict(r.get("doc") or {})
        doc["_id"] = r["id"]
        out.append(doc)
    return out


def _select(cur, sql: str, params: dict) -> list[dict]:
    cur.execute(sql, params)
    return _rows_to_docs(cur.fetchall())


# -- cost sources (projected to the fields the cost index reads) -------------

def fetch_opening_balances(cur, sku_ids: Iterable[Any]) -> list[dict]:
    return _select(
        cur,
        f"""
        SELECT id, jsonb_build_object('sku', doc->'sku', 'lotNumber', doc->'lotNumber', 'cost', doc->'cost') AS doc
        FROM opening_balances
        WHERE {_ref_match("doc->'sku'")}
        ORDER BY created_at ASC, id ASC
        """,
        {"forms": _forms_param(sku_ids)},
    )


def fetch_purchase_orders(cur, sku_ids: Iterable[Any]) -> list[dict]:
    return _select(
        cur,
        f"""
        SELECT id, jsonb_build_object('lineItems', doc->'lineItems') AS doc
        FROM purchase_orders
        WHERE {_line_match("doc", "sku")}
        ORDER BY created_at ASC, id ASC
        """,
        {"forms": _forms_param(sku_ids)},
    )


def fetch_manufacturing_outputs(cur, sku_ids: Iterable[Any]) -> list[dict]:
    return _select(
        cur,
        f"""
        SELECT id, jsonb_build_object(
                 'sku', doc->'sku', 'lotNumber', doc->'lotNumber', 'label', doc->'label',
                 'totalCost', doc->'totalCost', 'qty', doc->'qty'
               ) AS doc
        FROM manufacturing_jobs
        WHERE {_ref_match("doc->'sku'")}
        ORDER BY created_at ASC, id ASC
        """,
        {"forms": _forms_param(sku_ids)},
    )


def fetch_audit_adjustments(cur, sku_ids: Iterable[Any]) -> list[dict]:
    return _select(
        cur,
        f"""
        SELECT id, jsonb_build_object('sku', doc->'sku', 'lotNumber', doc->'lotNumber', 'cost', doc->'cost') AS doc
        FROM audit_adjustments
        WHERE {_ref_match("doc->'sku'")}
        ORDER BY created_at ASC, id ASC
        """,
        {"forms": _forms_param(sku_ids)},
    )


COST_SOURCE_FETCHERS = (
    ("opening_balances", fetch_opening_balances),
    ("purchase_orders", fetch_purchase_orders),
    ("manufacturing_jobs", fetch_manufacturing_outputs),
    ("audit_adjustments", fetch_audit_adjustments),
)


def fetch_cost_sources(cur, sku_ids: Iterable[Any]) -> CostSources:
    ids = list(sku_ids)
    return CostSources(**{name: fetch(cur, ids) for name, fetch in COST_SOURCE_FETCHERS})


# -- paged batches ------------------------------------------------------------

def fetch_sale_orders_page(cur, skip: int, limit: int) -> list[dict]:
    # Stable order: the sync driver advances `skip` between calls.
    return _select(
        cur,
        """
        SELECT id, jsonb_build_object('lineItems', doc->'lineItems') AS doc
        FROM sale_orders
        ORDER BY created_at ASC, id ASC
        OFFSET %(skip)s LIMIT %(limit)s
        """,
        {"skip": skip, "limit": limit},
    )


def fetch_manufacturing_jobs_page(cur, skip: int, limit: int, order_ids: Optional[list[str]] = None) -> list[dict]:
    sql = """
        SELECT id, jsonb_build_object(
                 'sku', doc->'sku', 'qty', doc->'qty', 'qtyDifference', doc->'qtyDifference',
                 'lotNumber', doc->'lotNumber', 'label', doc->'label',
                 'lineItems', doc->'lineItems', 'labor', doc->'labor',
                 'materialCost', doc->'materialCost', 'packagingCost', doc->'packagingCost',
                 'laborCost', doc->'laborCost', 'totalCost', doc->'totalCost'
               ) AS doc
        FROM manufacturing_jobs
    """
    params: dict = {"skip": skip, "limit": limit}
    if order_ids:
        sql += " WHERE id = ANY(%(order_ids)s)"
        params["order_ids"] = list(order_ids)
    sql += " ORDER BY created_at ASC, id ASC OFFSET %(skip)s LIMIT %(limit)s"
    return _select(cur, sql, params)


# -- single-SKU reads -----------------------------------------------------------

def fetch_sku(cur, sku_id: str) -> Optional[dict]:
    docs = _select(cur, "SELECT id, doc FROM skus WHERE id = %(id)s", {"id": sku_id})
    return docs[0] if docs else None


def fetch_sku_categories(cur, sku_ids: Iterable[str]) -> dict[str, str]:
    ids = sorted({str(s) for s in sku_ids if s})
    if not ids:
        return {}
    cur.execute(
        "SELECT id, doc->>'category' AS category FROM skus WHERE id = ANY(%(ids)s)",
        {"ids": ids},
    )
    return {str(r["id"]): (r.get("category") or "") for r in (cur.fetchall() or [])}


def fetch_global_start_date(cur) -> Optional[datetime]:
    cur.execute(
        """
        SELECT doc->>'value' AS value
        FROM settings
        WHERE id = %(key)s OR doc->>'key' = %(key)s
        LIMIT 1
        """,
        {"key": GLOBAL_START_DATE_KEY},
    )
    row = cur.fetchone()
    if not row or not row.get("value"):
        return None
    return parse_dt(row["value"])


def fetch_sku_activity(cur, sku_id: str) -> SkuActivity:
    params = {"forms": _forms_param([sku_id])}
    by_sku = _ref_match("doc->'sku'")
    return SkuActivity(
        opening_balances=_select(
            cur, f"SELECT id, doc FROM opening_balances WHERE {by_sku} ORDER BY created_at ASC, id ASC", params
        ),
        purchase_orders=_select(
            cur, f"SELECT id, doc FROM purchase_orders WHERE {_line_match('doc', 'sku')} ORDER BY created_at ASC, id ASC", params
        ),
        manufacturing_jobs=_select(
            cur,
            f"SELECT id, doc FROM manufacturing_jobs WHERE {by_sku} OR {_line_match('doc', 'sku')} ORDER BY created_at ASC, id ASC",
            params,
        ),
        sale_orders=_select(
            cur, f"SELECT id, doc FROM sale_orders WHERE {_line_match('doc', 'sku')} ORDER BY created_at ASC, id ASC", params
        ),
        web_orders=_select(
            cur,
            f"SELECT id, doc FROM web_orders WHERE {_line_match('doc', 'sku', 'linkedSkuId')} ORDER BY created_at ASC, id ASC",
            params,
        ),
        audit_adjustments=_select(
            cur, f"SELECT id, doc FROM audit_adjustments WHERE {by_sku} ORDER BY created_at ASC, id ASC", params
        ),
    )


def fetch_web_order_for_update(cur, order_id: str) -> Optional[dict]:
    docs = _select(cur, "SELECT id, doc FROM web_orders WHERE id = %(id)s FOR UPDATE", {"id": order_id})
    return docs[0] if docs else None


def save_web_order(cur, order: dict) -> None:
    doc = {k: v for k, v in order.items() if k != "_id"}
    cur.execute(
        "UPDATE web_orders SET doc = %(doc)s WHERE id = %(id)s",
        {"doc": Jsonb(doc), "id": order["_id"]},
    )


# -- bulk writes ----------------------------------------------------------------

_SET_LINE_COST_SQL = """
UPDATE sale_orders AS so
SET doc = jsonb_set(so.doc, ARRAY['lineItems', (li.idx - 1)::text, 'cost'], to_jsonb(%(cost)s::float8))
FROM (
  SELECT e.idx, e.item
  FROM sale_orders s
  CROSS JOIN LATERAL jsonb_array_elements(s.doc->'lineItems') WITH ORDINALITY AS e(item, idx)
  WHERE s.id = %(order_id)s AND e.item->'_id' = ANY(%(line_forms)s)
  LIMIT 1
) AS li
WHERE so.id = %(order_id)s
  AND (li.item->'cost') IS DISTINCT FROM to_jsonb(%(cost)s::float8)
"""

_PATCH_JOB_SQL = """
UPDATE manufacturing_jobs
SET doc = doc || %(patch)s
WHERE id = %(job_id)s
  AND doc IS DISTINCT FROM (doc || %(patch)s)
"""


def _apply_each(conn, sql: str, ops: list[dict], on_failure) -> tuple[int, int]:
    """
    updateOne semantics: each op runs in its own savepoint so one failing
    update does not roll back the others. Connection loss still propagates.
    Returns (modified, failed).
    """
    modified = 0
    failed = 0
    with conn.cursor() as cur:
        for op in ops:
            try:
                with conn.transaction():
                    cur.execute(sql, op)
                    modified += max(cur.rowcount or 0, 0)
            except psycopg.OperationalError:
                raise
            except psycopg.Error as exc:
                failed += 1
                on_failure(op, exc)
    return modified, failed


def bulk_update_line_item_costs(conn, ops: list[dict], on_failure=lambda op, exc: None) -> tuple[int, int]:
    """
    ops: [{"order_id", "line_item_id", "cost"}]. A line `_id` may be stored
    bare or typed, so it is matched against both identifier forms.
    """
    params = [{**op, "line_forms": _forms_param([op["line_item_id"]])} for op in ops]
    return _apply_each(conn, _SET_LINE_COST_SQL, params, on_failure)


def bulk_update_manufacturing_costs(conn, ops: list[dict], on_failure=lambda op, exc: None) -> tuple[int, int]:
    """ops: [{"job_id", "set": {...fields}}]"""
    params = [{"job_id": op["job_id"], "patch": Jsonb(op["set"])} for op in ops]
    return _apply_each(conn, _PATCH_JOB_SQL, params, on_failure)
