"""
Doses API Router
Endpoints for materializing schedules and recording dose actions
"""

from typing import Optional
from datetime import datetime
from fastapi import APIRouter, Depends, status, Query
from sqlalchemy.orm import Session

from api.deps import get_db, resolve_user_id, services, verify_trigger_caller
from api.schemas.dose import (
    DoseActionRequest,
    DoseList,
    DoseResponse,
    MaterializeRequest,
    MaterializeResponse,
)
from services.auth_service import TriggerCaller


router = APIRouter(prefix="/doses", tags=["doses"])


@router.post("/materialize", response_model=MaterializeResponse, status_code=status.HTTP_201_CREATED)
async def materialize_doses(
    request: MaterializeRequest,
    caller: TriggerCaller = Depends(verify_trigger_caller),
    db: Session = Depends(get_db)
):
    """
    Generate missing dose instances for an item's active schedule
    """
    ledger = services.get_dose_ledger_service()
    ledger.get_item(request.item_id, db, user_id=None if caller.automated else caller.user_id)

    created = await ledger.materialize_doses(
        request.item_id,
        db=db,
        window_end=request.window_end,
        window_start=request.window_start
    )
    now = ledger.clock()
    return MaterializeResponse(
        item_id=request.item_id,
        created=len(created),
        doses=[ledger.dose_to_dict(d, now) for d in created]
    )


@router.post("/{dose_id}/action", response_model=DoseResponse)
async def record_dose_action(
    dose_id: int,
    request: DoseActionRequest,
    caller: TriggerCaller = Depends(verify_trigger_caller),
    db: Session = Depends(get_db)
):
    """
    Record taken / skipped / missed, or snooze a scheduled dose
    """
    ledger = services.get_dose_ledger_service()
    dose = await ledger.record_dose_action(
        dose_id,
        request.action.value,
        db=db,
        at=request.at,
        user_id=None if caller.automated else caller.user_id
    )
    return ledger.dose_to_dict(dose)


@router.get("", response_model=DoseList)
async def list_doses(
    user_id: Optional[int] = Query(None),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    item_id: Optional[int] = Query(None),
    caller: TriggerCaller = Depends(verify_trigger_caller),
    db: Session = Depends(get_db)
):
    """
    List a user's doses with their current effective status
    """
    ledger = services.get_dose_ledger_service()
    target_user = resolve_user_id(caller, user_id)

    doses = await ledger.list_doses(target_user, db=db, start=start, end=end, item_id=item_id)
    now = ledger.clock()
    return DoseList(
        doses=[ledger.dose_to_dict(d, now) for d in doses],
        total=len(doses)
    )


@router.get("/{dose_id}", response_model=DoseResponse)
async def get_dose(
    dose_id: int,
    caller: TriggerCaller = Depends(verify_trigger_caller),
    db: Session = Depends(get_db)
):
    ledger = services.get_dose_ledger_service()
    dose = await ledger.get_dose(dose_id, db, user_id=None if caller.automated else caller.user_id)
    return ledger.dose_to_dict(dose)
