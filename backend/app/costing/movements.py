"""
Turns source documents into signed inventory movements for one SKU.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Optional

from .bom import compute_line_cost
from .cost_index import CostIndex, manufacturing_lot, purchase_line_unit_cost, to_number
from .refs import normalize_lot, normalize_ref, same_ref

OPENING = "opening"
PURCHASE = "purchase"
PRODUCTION = "production"
CONSUMPTION = "consumption"
SALE = "sale"
WEB = "web"
AUDIT = "audit"

MOVEMENT_TYPES = (OPENING, PRODUCTION, CONSUMPTION, PURCHASE, SALE, WEB, AUDIT)
# Movement types that bring a lot into existence.
SOURCE_TYPES = {OPENING: "Opening Balance", PURCHASE: "Purchase Order", PRODUCTION: "Manufacturing", AUDIT: "Audit Adjustment"}

WEB_ORDER_ACTIVE_STATUSES = {"completed", "shipped", "processing", "pending", "on-hold", "on hold"}

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_dt(raw: Any) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        dt = raw
    elif isinstance(raw, date):
        dt = datetime(raw.year, raw.month, raw.day)
    elif isinstance(raw, dict) and "$date" in raw:
        return parse_dt(raw["$date"])
    else:
        s = str(raw).strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _first_dt(*candidates: Any) -> datetime:
    for c in candidates:
        dt = parse_dt(c)
        if dt is not None:
            return dt
    return _EPOCH


@dataclass(frozen=True)
class InventoryMovement:
    id: str
    date: datetime
    type: str
    reference: str
    lot_number: str
    quantity: float
    uom: Optional[str] = None
    cost: float = 0.0
    doc_id: Optional[str] = None
    link: Optional[str] = None
    sale_price: float = 0.0


@dataclass(frozen=True)
class SkuActivity:
    """Raw documents touching one SKU, as loaded from the store."""
    opening_balances: list = field(default_factory=list)
    purchase_orders: list = field(default_factory=list)
    manufacturing_jobs: list = field(default_factory=list)
    sale_orders: list = field(default_factory=list)
    web_orders: list = field(default_factory=list)
    audit_adjustments: list = field(default_factory=list)


def _doc_id(doc: dict) -> str:
    return normalize_ref(doc.get("_id")) or ""


def _unit_cost(cost_index: Optional[CostIndex], sku_id: str, lot: Optional[str], recorded: Any) -> float:
    if cost_index is not None and lot:
        resolved = cost_index.cost_for(sku_id, lot)
        if resolved is not None:
            return resolved
    return to_number(recorded)


def collect_movements(sku_id: str, activity: SkuActivity, cost_index: Optional[CostIndex] = None) -> list[InventoryMovement]:
    sku_id = normalize_ref(sku_id) or ""
    out: list[InventoryMovement] = []

    def is_sku(ref: Any) -> bool:
        return same_ref(ref, sku_id)

    for ob in activity.opening_balances:
        if not is_sku(ob.get("sku")):
            continue
        oid = _doc_id(ob)
        lot = normalize_lot(ob.get("lotNumber"))
        out.append(InventoryMovement(
            id=oid,
            date=_first_dt(ob.get("createdAt")),
            type=OPENING,
            reference=oid,
            lot_number=lot or "",
            quantity=to_number(ob.get("qty")),
            uom=ob.get("uom"),
            cost=_unit_cost(cost_index, sku_id, lot, ob.get("cost")),
            doc_id=oid,
            link=f"/warehouse/opening-balances/{oid}",
        ))

    for po in activity.purchase_orders:
        po_id = _doc_id(po)
        for line in po.get("lineItems") or []:
            if not isinstance(line, dict) or not is_sku(line.get("sku")):
                continue
            received = to_number(line.get("qtyReceived"))
            if received <= 0:
                continue
            lot = normalize_lot(line.get("lotNumber"))
            out.append(InventoryMovement(
                id=normalize_ref(line.get("_id")) or f"{po_id}_{len(out)}",
                date=_first_dt(line.get("receivedDate"), po.get("receivedDate"), po.get("createdAt")),
                type=PURCHASE,
                reference=str(po.get("label") or po_id),
                lot_number=lot or "",
                quantity=received,
                uom=line.get("uom"),
                cost=_unit_cost(cost_index, sku_id, lot, purchase_line_unit_cost(line)),
                doc_id=po_id,
                link=f"/warehouse/purchase-orders/{po_id}",
            ))

    for job in activity.manufacturing_jobs:
        job_id = _doc_id(job)
        label = str(job.get("label") or "Production")
        if is_sku(job.get("sku")):
            lot = manufacturing_lot(job)
            out.append(InventoryMovement(
                id=f"{job_id}_prod",
                date=_first_dt(job.get("scheduledFinish"), job.get("createdAt")),
                type=PRODUCTION,
                reference=label,
                lot_number=lot or "",
                quantity=to_number(job.get("qty")),
                uom=job.get("uom"),
                cost=_unit_cost(cost_index, sku_id, lot, None),
                doc_id=job_id,
                link=f"/warehouse/manufacturing/{job_id}",
            ))
        for i, line in enumerate(job.get("lineItems") or []):
            if not isinstance(line, dict) or not is_sku(line.get("sku")):
                continue
            consumed = compute_line_cost(line, job.get("qty")).total_qty
            if consumed <= 0:
                continue
            lot = normalize_lot(line.get("lotNumber"))
            out.append(InventoryMovement(
                id=normalize_ref(line.get("_id")) or f"{job_id}_line_{i}",
                date=_first_dt(line.get("createdAt"), job.get("scheduledStart"), job.get("createdAt")),
                type=CONSUMPTION,
                reference=label,
                lot_number=lot or "",
                quantity=-consumed,
                uom=line.get("uom"),
                cost=_unit_cost(cost_index, sku_id, lot, line.get("cost")),
                doc_id=job_id,
                link=f"/warehouse/manufacturing/{job_id}",
            ))

    for so in activity.sale_orders:
        so_id = _doc_id(so)
        for line in so.get("lineItems") or []:
            if not isinstance(line, dict) or not is_sku(line.get("sku")):
                continue
            shipped = to_number(line.get("qtyShipped"))
            if shipped <= 0:
                continue
            lot = normalize_lot(line.get("lotNumber"))
            out.append(InventoryMovement(
                id=normalize_ref(line.get("_id")) or f"{so_id}_{len(out)}",
                date=_first_dt(so.get("shippedDate"), so.get("createdAt")),
                type=SALE,
                reference=str(so.get("label") or so_id),
                lot_number=lot or "",
                quantity=-abs(shipped),
                uom=line.get("uom"),
                cost=_unit_cost(cost_index, sku_id, lot, line.get("cost")),
                doc_id=so_id,
                link=f"/sales/wholesale-orders/{so_id}",
                sale_price=to_number(line.get("price")),
            ))

    for wo in activity.web_orders:
        if str(wo.get("status") or "").strip().lower() not in WEB_ORDER_ACTIVE_STATUSES:
            continue
        wo_id = _doc_id(wo)
        for i, line in enumerate(wo.get("lineItems") or []):
            if not isinstance(line, dict):
                continue
            if not (is_sku(line.get("linkedSkuId")) or is_sku(line.get("sku"))):
                continue
            qty = abs(to_number(line.get("quantity")))
            total = to_number(line.get("total"))
            lot = normalize_lot(line.get("lotNumber"))
            out.append(InventoryMovement(
                id=normalize_ref(line.get("_id")) or normalize_ref(line.get("id")) or f"{wo_id}_{i}",
                date=_first_dt(wo.get("dateCreated"), wo.get("createdAt")),
                type=WEB,
                reference=wo_id,
                lot_number=lot or "",
                quantity=-qty,
                uom="Unit",
                cost=_unit_cost(cost_index, sku_id, lot, line.get("cost")),
                doc_id=wo_id,
                link=f"/sales/web-orders/{wo_id}",
                sale_price=(total / qty) if (total and qty) else 0.0,
            ))

    for adj in activity.audit_adjustments:
        if not is_sku(adj.get("sku")):
            continue
        adj_id = _doc_id(adj)
        lot = normalize_lot(adj.get("lotNumber"))
        out.append(InventoryMovement(
            id=adj_id,
            date=_first_dt(adj.get("createdAt")),
            type=AUDIT,
            reference=str(adj.get("reason") or ""),
            lot_number=lot or "",
            quantity=to_number(adj.get("qty")),
            uom=adj.get("uom"),
            cost=_unit_cost(cost_index, sku_id, lot, adj.get("cost")),
            doc_id=adj_id,
            link="/warehouse/audit-adjustments",
        ))

    return out
