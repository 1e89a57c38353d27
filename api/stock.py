"""
Stock API Router
Endpoints for stock projections, refills and adjustments
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from api.deps import get_db, resolve_user_id, services, verify_trigger_caller
from api.schemas.stock import (
    AdjustRequest,
    RefillRequest,
    StockProjectionList,
    StockResponse,
)
from models import ConsumptionReason
from services.auth_service import TriggerCaller


router = APIRouter(prefix="/stock", tags=["stock"])


def _check_item_access(item_id: int, caller: TriggerCaller, db: Session) -> None:
    services.get_dose_ledger_service().get_item(
        item_id, db, user_id=None if caller.automated else caller.user_id
    )


@router.get("/projection", response_model=StockProjectionList)
async def get_stock_projection(
    user_id: Optional[int] = Query(None),
    item_id: Optional[int] = Query(None),
    caller: TriggerCaller = Depends(verify_trigger_caller),
    db: Session = Depends(get_db)
):
    """
    Depletion forecast for one item or all active items, critical first
    """
    stock_service = services.get_stock_service()
    target_user = resolve_user_id(caller, user_id)

    projections = await stock_service.get_stock_projection(target_user, db=db, item_id=item_id)
    return StockProjectionList(
        projections=[p.to_dict() for p in projections],
        total=len(projections)
    )


@router.post("/{item_id}/refill", response_model=StockResponse)
async def refill_stock(
    item_id: int,
    request: RefillRequest,
    caller: TriggerCaller = Depends(verify_trigger_caller),
    db: Session = Depends(get_db)
):
    _check_item_access(item_id, caller, db)
    stock_service = services.get_stock_service()
    return await stock_service.refill(
        item_id,
        request.amount,
        db=db,
        projected_end_at=request.projected_end_at
    )


@router.post("/{item_id}/adjust", response_model=StockResponse)
async def adjust_stock(
    item_id: int,
    request: AdjustRequest,
    caller: TriggerCaller = Depends(verify_trigger_caller),
    db: Session = Depends(get_db)
):
    """
    Manual correction or loss of units
    """
    _check_item_access(item_id, caller, db)
    stock_service = services.get_stock_service()
    return await stock_service.adjust_stock(
        item_id,
        request.delta,
        ConsumptionReason(request.reason.value),
        db=db
    )
