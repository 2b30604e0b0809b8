"""
BOM consumption cost model for manufacturing jobs.

For each ingredient line:
  bomQty    = recipeQty * orderQty
  qtyExtra  = bomQty / (sa / 100) - bomQty   when sa > 0, else 0
  totalQty  = bomQty + qtyScrapped + qtyExtra
  lineCost  = totalQty * cost

`sa` is the assay/yield percentage (55.6 means 55.6% of the sourced material
ends up usable), so qtyExtra is the additional material needed to cover the
yield loss.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence

from .cost_index import to_number
from .refs import normalize_ref

PACKAGING_TOKEN = "packaging"


@dataclass(frozen=True)
class LineCost:
    bom_qty: float
    qty_extra: float
    total_qty: float
    line_cost: float

    def to_dict(self) -> dict:
        return {
            "bomQty": self.bom_qty,
            "qtyExtra": self.qty_extra,
            "totalQty": self.total_qty,
            "lineCost": self.line_cost,
        }


@dataclass(frozen=True)
class OrderCost:
    material_cost: float
    packaging_cost: float
    labor_cost: float
    total_cost: float
    unit_cost: float
    lines: tuple


def compute_line_cost(line: Mapping[str, Any], order_qty: Any, cost: Any = None) -> LineCost:
    """
    `cost` overrides the line's stored unit cost (used when the cost was just
    resolved from the lot cost index).
    """
    bom_qty = to_number(line.get("recipeQty")) * to_number(order_qty)
    sa = to_number(line.get("sa"))
    qty_extra = (bom_qty / (sa / 100) - bom_qty) if sa > 0 else 0.0
    total_qty = bom_qty + to_number(line.get("qtyScrapped")) + qty_extra
    unit_cost = to_number(line.get("cost") if cost is None else cost)
    return LineCost(bom_qty=bom_qty, qty_extra=qty_extra, total_qty=total_qty, line_cost=total_qty * unit_cost)


def parse_duration_hours(duration: Any) -> float:
    # "HH:MM:SS" or "HH:MM"; anything else counts as zero time.
    if not duration or not isinstance(duration, str):
        return 0.0
    parts = []
    for p in duration.strip().split(":"):
        try:
            parts.append(float(p))
        except ValueError:
            parts.append(0.0)
    if len(parts) == 3:
        return parts[0] + parts[1] / 60 + parts[2] / 3600
    if len(parts) == 2:
        return parts[0] + parts[1] / 60
    return 0.0


def labor_cost(labor: Optional[Sequence[Mapping[str, Any]]]) -> float:
    total = 0.0
    for entry in labor or []:
        if not isinstance(entry, Mapping):
            continue
        total += parse_duration_hours(entry.get("duration")) * to_number(entry.get("hourlyRate"))
    return total


def is_packaging(category: Any) -> bool:
    return PACKAGING_TOKEN in str(category or "").lower()


def compute_order_cost(
    job: Mapping[str, Any],
    *,
    unit_costs: Optional[Sequence[Optional[float]]] = None,
    categories: Optional[Mapping[str, str]] = None,
) -> OrderCost:
    """
    Job-level roll-up. `unit_costs[i]` (when given) replaces the stored cost of
    `job.lineItems[i]`; `categories` maps ingredient sku id -> SKU category.
    """
    order_qty = to_number(job.get("qty"))
    categories = categories or {}
    material = 0.0
    packaging = 0.0
    lines = []
    for i, line in enumerate(job.get("lineItems") or []):
        if not isinstance(line, Mapping):
            continue
        override = unit_costs[i] if unit_costs is not None and i < len(unit_costs) else None
        lc = compute_line_cost(line, order_qty, cost=override)
        lines.append(lc)
        if is_packaging(categories.get(normalize_ref(line.get("sku")) or "")):
            packaging += lc.line_cost
        else:
            material += lc.line_cost

    labor = labor_cost(job.get("labor"))
    total = material + packaging + labor
    produced = order_qty + to_number(job.get("qtyDifference"))
    unit = total / produced if produced > 0 else 0.0
    return OrderCost(
        material_cost=material,
        packaging_cost=packaging,
        labor_cost=labor,
        total_cost=total,
        unit_cost=unit,
        lines=tuple(lines),
    )
