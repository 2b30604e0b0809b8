from fastapi import APIRouter, HTTPException
from pydantic import BaseModel
from typing import Optional
from datetime import datetime, timezone
from ..db import get_conn
from ..validation import LotNumber
from ..costing.cost_index import build_cost_index
from ..costing.documents import fetch_cost_sources, fetch_web_order_for_update, save_web_order
from ..costing.refs import normalize_ref, same_ref

router = APIRouter(prefix="/retail", tags=["retail"])


class LineLotIn(BaseModel):
    lot_number: Optional[LotNumber] = None


def _find_line(order: dict, line_item_id: str):
    for line in order.get("lineItems") or []:
        if not isinstance(line, dict):
            continue
        if same_ref(line.get("_id"), line_item_id) or same_ref(line.get("id"), line_item_id):
            return line
    return None


@router.patch("/web-orders/{order_id}/line-items/{line_item_id}/lot")
def update_web_order_line_lot(order_id: str, line_item_id: str, data: LineLotIn):
    if not data.lot_number:
        raise HTTPException(status_code=400, detail="lot_number is required")

    with get_conn() as conn:
        with conn.cursor() as cur:
            order = fetch_web_order_for_update(cur, order_id)
            if not order:
                raise HTTPException(status_code=404, detail="order not found")
            line = _find_line(order, line_item_id)
            if line is None:
                raise HTTPException(status_code=404, detail="line item not found")
            sku_id = normalize_ref(line.get("linkedSkuId")) or normalize_ref(line.get("sku"))
            if not sku_id:
                raise HTTPException(status_code=400, detail="line item has no linked SKU; link a SKU first")

            index = build_cost_index([sku_id], fetch_cost_sources(cur, [sku_id]))
            cost = index.cost_for(sku_id, data.lot_number)
            if cost is None:
                cost = 0.0

            line["lotNumber"] = data.lot_number
            line["cost"] = cost
            order["updatedAt"] = datetime.now(timezone.utc).isoformat()
            save_web_order(cur, order)

    return {"ok": True, "line_item_id": line_item_id, "lot_number": data.lot_number, "cost": cost}
