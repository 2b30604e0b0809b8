from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field
from typing import Optional
from ..config import settings
from ..costing.sync import CostSyncError, sync_batch

router = APIRouter(prefix="/sales", tags=["sales"])


class SyncCostsIn(BaseModel):
    skip: int = Field(0, ge=0)
    limit: Optional[int] = Field(None, ge=1, le=settings.sync_batch_limit_max)


@router.post("/orders/sync-costs")
def sync_sale_order_costs(data: SyncCostsIn):
    """
    One batch of sale-order cost reconciliation. Callers loop, advancing
    `skip` by `limit`, until `processed < limit`.
    """
    try:
        return sync_batch(data.skip, data.limit)
    except CostSyncError as exc:
        raise HTTPException(status_code=503, detail=f"cost sync failed, retry skip={exc.skip}: {exc}")
