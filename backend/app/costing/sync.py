"""
Batch cost synchronizer for sale orders.

`sync_batch(skip, limit)` is one idempotent, retryable step: it reads a page
of sale orders, resolves every line's (sku, lot) through a freshly built cost
index and writes back only the costs that moved by more than epsilon. An
external driver (backend/scripts/sync_costs.py or the HTTP route) advances
`skip` until a short page comes back.
"""
from __future__ import annotations

import json
import sys
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from typing import Iterable, Optional

import psycopg

from ..config import settings
from ..db import get_conn
from .cost_index import CostIndex, CostSources, LotKey, build_cost_index, lot_key, to_number
from .documents import COST_SOURCE_FETCHERS, bulk_update_line_item_costs, fetch_sale_orders_page
from .refs import normalize_ref


def _json_log(level: str, event: str, **fields):
    rec = {"ts": datetime.now(timezone.utc).isoformat(), "level": level, "event": event, **fields}
    print(json.dumps(rec, default=str), file=sys.stderr)


class CostSyncError(RuntimeError):
    """A batch could not complete; retry the same `skip`."""

    def __init__(self, message: str, *, skip: int):
        super().__init__(message)
        self.skip = skip


def clamp_limit(limit) -> int:
    try:
        n = int(limit)
    except (TypeError, ValueError):
        n = settings.sync_batch_limit
    return max(1, min(n, settings.sync_batch_limit_max))


def collect_lot_pairs(orders: Iterable[dict]) -> set[LotKey]:
    pairs: set[LotKey] = set()
    for order in orders or []:
        for line in order.get("lineItems") or []:
            if not isinstance(line, dict):
                continue
            key = lot_key(line.get("sku"), line.get("lotNumber"))
            if key:
                pairs.add(key)
    return pairs


def fetch_cost_sources_concurrently(sku_ids: Iterable[str]) -> CostSources:
    """The four source reads, one pooled connection each."""
    ids = sorted(set(sku_ids))

    def load(fetch):
        with get_conn() as conn:
            with conn.cursor() as cur:
                return fetch(cur, ids)

    results: dict[str, list] = {}
    with ThreadPoolExecutor(max_workers=len(COST_SOURCE_FETCHERS)) as ex:
        futs = {ex.submit(load, fetch): name for name, fetch in COST_SOURCE_FETCHERS}
        for fut in as_completed(futs):
            # Any failed read fails the whole batch.
            results[futs[fut]] = fut.result()
    return CostSources(**results)


def plan_line_cost_updates(orders: Iterable[dict], index: CostIndex, epsilon: float) -> tuple[list[dict], int, int]:
    """
    Returns (ops, matched, total_lines). An op is emitted only when the
    resolved cost differs from the stored one by more than `epsilon`.
    """
    ops: list[dict] = []
    matched = 0
    total = 0
    for order in orders or []:
        order_id = normalize_ref(order.get("_id"))
        for line in order.get("lineItems") or []:
            if not isinstance(line, dict):
                continue
            total += 1
            resolved = index.cost_for(line.get("sku"), line.get("lotNumber"))
            if resolved is None:
                continue
            matched += 1
            line_id = normalize_ref(line.get("_id"))
            if not order_id or not line_id:
                continue
            if abs(resolved - to_number(line.get("cost"))) > epsilon:
                ops.append({"order_id": order_id, "line_item_id": line_id, "cost": resolved})
    return ops, matched, total


def _log_failed_op(op: dict, exc: Exception) -> None:
    _json_log(
        "warning",
        "costing.bulk_write.op_failed",
        order_id=op.get("order_id"),
        line_item_id=op.get("line_item_id"),
        error_type=type(exc).__name__,
        error=str(exc)[:500],
    )


def sync_batch(skip: int, limit: int, *, epsilon: Optional[float] = None) -> dict:
    skip = max(0, int(skip or 0))
    limit = clamp_limit(limit)
    eps = settings.cost_epsilon if epsilon is None else float(epsilon)

    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                orders = fetch_sale_orders_page(cur, skip, limit)
        pairs = collect_lot_pairs(orders)
        sku_ids = {p.sku for p in pairs}
        sources = fetch_cost_sources_concurrently(sku_ids) if sku_ids else CostSources()
    except psycopg.Error as exc:
        raise CostSyncError(f"failed to load sale orders batch at skip={skip}: {exc}", skip=skip) from exc

    index = build_cost_index(sku_ids, sources)
    ops, matched, total_lines = plan_line_cost_updates(orders, index, eps)

    updated = 0
    failed = 0
    if ops:
        try:
            with get_conn() as conn:
                updated, failed = bulk_update_line_item_costs(conn, ops, on_failure=_log_failed_op)
        except psycopg.Error as exc:
            raise CostSyncError(f"failed to write sale order costs at skip={skip}: {exc}", skip=skip) from exc

    stats = {
        "totalLineItems": total_lines,
        "uniquePairs": len(pairs),
        "uniqueSkus": len(sku_ids),
        "costMapSize": len(index),
        "matchedItems": matched,
        **index.tier_counts,
    }
    out = {
        "processed": len(orders),
        "ops": len(ops),
        "updated": updated,
        "failed": failed,
        "skip": skip,
        "limit": limit,
        "stats": stats,
    }
    _json_log("info", "costing.sync_batch", **{k: v for k, v in out.items() if k != "stats"}, matched=matched)
    return out
