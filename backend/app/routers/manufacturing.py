from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field
from typing import Optional, List
from ..validation import DocumentId
from ..config import settings
from ..costing.bom import compute_line_cost
from ..costing.manufacturing_sync import sync_manufacturing_batch
from ..costing.sync import CostSyncError

router = APIRouter(prefix="/manufacturing", tags=["manufacturing"])


class ManufacturingSyncIn(BaseModel):
    skip: int = Field(0, ge=0)
    limit: Optional[int] = Field(None, ge=1, le=settings.sync_batch_limit_max)
    order_ids: Optional[List[DocumentId]] = None


class LineCostIn(BaseModel):
    recipe_qty: float = Field(0, ge=0)
    order_qty: float = Field(0, ge=0)
    sa: float = Field(0, ge=0)
    qty_scrapped: float = Field(0, ge=0)
    cost: float = Field(0, ge=0)


@router.post("/sync-costs")
def sync_manufacturing_costs(data: ManufacturingSyncIn):
    try:
        return sync_manufacturing_batch(data.skip, data.limit, data.order_ids)
    except CostSyncError as exc:
        raise HTTPException(status_code=503, detail=f"cost sync failed, retry skip={exc.skip}: {exc}")


@router.post("/line-cost")
def line_cost_preview(data: LineCostIn):
    line = {"recipeQty": data.recipe_qty, "sa": data.sa, "qtyScrapped": data.qty_scrapped, "cost": data.cost}
    return compute_line_cost(line, data.order_qty).to_dict()
