from fastapi import APIRouter, HTTPException, Query
from datetime import date
from typing import Optional, List
from ..db import get_conn
from ..config import settings
from ..validation import MovementType, SortOrder
from ..costing.cost_index import build_cost_index
from ..costing.documents import fetch_cost_sources, fetch_global_start_date, fetch_sku, fetch_sku_activity
from ..costing.ledger import LedgerFilters, available_lots, build_ledger, ledger_financials, summarize_lots
from ..costing.movements import collect_movements
from ..costing.refs import normalize_lot, normalize_ref

router = APIRouter(prefix="/inventory", tags=["inventory"])


def _load_sku_movements(cur, sku_id: str):
    """
    SKU doc, movements and the cost index for one SKU. Movements dated before
    the global inventory start date are dropped; the cost index still sees
    every source record.
    """
    sku = fetch_sku(cur, sku_id)
    if not sku:
        raise HTTPException(status_code=404, detail="sku not found")
    sources = fetch_cost_sources(cur, [sku_id])
    index = build_cost_index([sku_id], sources)
    movements = collect_movements(sku_id, fetch_sku_activity(cur, sku_id), index)
    start = fetch_global_start_date(cur)
    if start is not None:
        movements = [m for m in movements if m.date >= start]
    return sku, movements, index


@router.get("/skus/{sku_id}/ledger")
def sku_ledger(
    sku_id: str,
    order: SortOrder = "desc",
    lot: Optional[str] = None,
    exclude: Optional[List[MovementType]] = Query(None),
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    missing_lot: bool = False,
    missing_cost: bool = False,
    visible: Optional[int] = Query(None, ge=0),
):
    if start_date and end_date and end_date < start_date:
        raise HTTPException(status_code=400, detail="end_date must be on or after start_date")
    sku_id = normalize_ref(sku_id) or ""
    if not sku_id:
        raise HTTPException(status_code=400, detail="sku_id is required")

    with get_conn() as conn:
        with conn.cursor() as cur:
            sku, movements, index = _load_sku_movements(cur, sku_id)

    filters = LedgerFilters(
        exclude_types=frozenset(exclude or []),
        start_date=start_date,
        end_date=end_date,
        lot_number=normalize_lot(lot),
        missing_lot=missing_lot,
        missing_cost=missing_cost,
    )
    ledger = build_ledger(sku_id, movements, cost_index=index, filters=filters, order=order)
    page_size = settings.ledger_page_size if visible is None else visible
    page = ledger.page(page_size)
    return {
        "sku": sku,
        "transactions": [t.to_dict() for t in page],
        "lots": [l.to_dict() for l in ledger.lots],
        "lot_numbers": list(ledger.lot_numbers),
        "financials": ledger_financials(movements),
        "total_count": ledger.total_count,
        "has_more": len(page) < ledger.total_count,
    }


@router.get("/skus/{sku_id}/lots")
def sku_lots(sku_id: str, available: bool = False):
    sku_id = normalize_ref(sku_id) or ""
    if not sku_id:
        raise HTTPException(status_code=400, detail="sku_id is required")
    with get_conn() as conn:
        with conn.cursor() as cur:
            _sku, movements, index = _load_sku_movements(cur, sku_id)
    lots = summarize_lots(movements, index, sku_id)
    if available:
        lots = available_lots(lots)
    else:
        lots = sorted((l for l in lots if l.balance != 0), key=lambda l: l.balance, reverse=True)
    return {"sku_id": sku_id, "lots": [l.to_dict() for l in lots]}


@router.get("/lots/cost")
def lot_cost(sku: str, lot: str):
    sku_id = normalize_ref(sku)
    lot_number = normalize_lot(lot)
    if not sku_id or not lot_number:
        raise HTTPException(status_code=400, detail="sku and lot are required")
    with get_conn() as conn:
        with conn.cursor() as cur:
            sources = fetch_cost_sources(cur, [sku_id])
    cost = build_cost_index([sku_id], sources).cost_for(sku_id, lot_number)
    return {"sku": sku_id, "lot_number": lot_number, "cost": cost, "found": cost is not None}
