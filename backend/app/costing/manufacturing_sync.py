"""
Manufacturing job cost synchronizer.

Re-prices ingredient lines from the lot cost index, recomputes the BOM
quantities and the job roll-up, and writes a job back only when something
moved: a line unit cost by more than `manufacturing_cost_epsilon` or a job
total by more than `manufacturing_total_epsilon`.
"""
from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from typing import Iterable, Optional

import psycopg

from ..config import settings
from ..db import get_conn
from .bom import compute_line_cost, compute_order_cost
from .cost_index import CostIndex, CostSources, build_cost_index, to_number
from .documents import bulk_update_manufacturing_costs, fetch_manufacturing_jobs_page, fetch_sku_categories
from .refs import normalize_ref
from .sync import CostSyncError, clamp_limit, fetch_cost_sources_concurrently

TOTAL_FIELDS = (
    ("materialCost", "material_cost"),
    ("packagingCost", "packaging_cost"),
    ("laborCost", "labor_cost"),
    ("totalCost", "total_cost"),
)


def _json_log(level: str, event: str, **fields):
    rec = {"ts": datetime.now(timezone.utc).isoformat(), "level": level, "event": event, **fields}
    print(json.dumps(rec, default=str), file=sys.stderr)


def ingredient_sku_ids(jobs: Iterable[dict]) -> set[str]:
    out: set[str] = set()
    for job in jobs or []:
        for line in job.get("lineItems") or []:
            if isinstance(line, dict):
                sku = normalize_ref(line.get("sku"))
                if sku:
                    out.add(sku)
    return out


def plan_job_update(
    job: dict,
    index: CostIndex,
    categories: dict[str, str],
    *,
    line_epsilon: float,
    total_epsilon: float,
) -> Optional[dict]:
    raw_lines = job.get("lineItems") or []
    unit_costs: list[Optional[float]] = []
    for line in raw_lines:
        if not isinstance(line, dict):
            unit_costs.append(None)
            continue
        resolved = index.cost_for(line.get("sku"), line.get("lotNumber"))
        unit_costs.append(resolved if resolved is not None else 0.0)

    changed = False
    new_lines = []
    for line, cost in zip(raw_lines, unit_costs):
        if not isinstance(line, dict):
            new_lines.append(line)
            continue
        if abs(cost - to_number(line.get("cost"))) > line_epsilon:
            changed = True
        lc = compute_line_cost(line, job.get("qty"), cost=cost)
        new_lines.append({**line, "cost": cost, **lc.to_dict()})

    totals = compute_order_cost(job, unit_costs=unit_costs, categories=categories)
    patch: dict = {"lineItems": new_lines}
    for field_name, attr in TOTAL_FIELDS:
        value = getattr(totals, attr)
        patch[field_name] = value
        if abs(value - to_number(job.get(field_name))) > total_epsilon:
            changed = True

    if not changed:
        return None
    return {"job_id": normalize_ref(job.get("_id")), "set": patch}


def _log_failed_op(op: dict, exc: Exception) -> None:
    _json_log("warning", "costing.bulk_write.op_failed", job_id=op.get("job_id"), error_type=type(exc).__name__, error=str(exc)[:500])


def sync_manufacturing_batch(skip: int, limit: int, order_ids: Optional[list[str]] = None) -> dict:
    skip = max(0, int(skip or 0))
    limit = clamp_limit(limit)
    ids = [i for i in (normalize_ref(x) for x in (order_ids or [])) if i]

    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                jobs = fetch_manufacturing_jobs_page(cur, skip, limit, ids or None)
                sku_ids = ingredient_sku_ids(jobs)
                categories = fetch_sku_categories(cur, sku_ids)
        sources = fetch_cost_sources_concurrently(sku_ids) if sku_ids else CostSources()
    except psycopg.Error as exc:
        raise CostSyncError(f"failed to load manufacturing batch at skip={skip}: {exc}", skip=skip) from exc

    index = build_cost_index(sku_ids, sources)
    ops = []
    for job in jobs:
        op = plan_job_update(
            job,
            index,
            categories,
            line_epsilon=settings.manufacturing_cost_epsilon,
            total_epsilon=settings.manufacturing_total_epsilon,
        )
        if op and op["job_id"]:
            ops.append(op)

    updated = 0
    failed = 0
    if ops:
        try:
            with get_conn() as conn:
                updated, failed = bulk_update_manufacturing_costs(conn, ops, on_failure=_log_failed_op)
        except psycopg.Error as exc:
            raise CostSyncError(f"failed to write manufacturing costs at skip={skip}: {exc}", skip=skip) from exc

    out = {
        "processed": len(jobs),
        "ops": len(ops),
        "updated": updated,
        "failed": failed,
        "skip": skip,
        "limit": limit,
        "stats": {"uniqueSkus": len(sku_ids), "costMapSize": len(index), **index.tier_counts},
    }
    _json_log("info", "costing.manufacturing_sync_batch", **{k: v for k, v in out.items() if k != "stats"})
    return out
