"""
Schedules API Router
Endpoints for replacing and disabling item schedules
"""

from typing import List, Optional
from datetime import date, datetime
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field, ConfigDict

from api.deps import get_db, services, verify_trigger_caller
from models import ScheduleFrequency
from services.auth_service import TriggerCaller


router = APIRouter(prefix="/schedules", tags=["schedules"])


# ==================== REQUEST SCHEMAS ====================

class ScheduleUpdate(BaseModel):
    """Schema for replacing an item's schedule"""
    times: List[str] = Field(..., min_length=1, description="Local clock times in HH:MM format")
    frequency: ScheduleFrequency = ScheduleFrequency.DAILY
    days_of_week: Optional[List[int]] = Field(None, description="Days 0-6 (Monday=0) for specific_days")
    interval_days: Optional[int] = Field(None, ge=1, description="Every N days for interval")
    start_date: Optional[date] = None
    window_end: Optional[datetime] = None


# ==================== RESPONSE SCHEMAS ====================

class ScheduleResponse(BaseModel):
    """Schema for schedule response"""
    id: int
    item_id: int
    frequency: ScheduleFrequency
    times: List[str]
    days_of_week: Optional[List[int]] = None
    interval_days: Optional[int] = None
    start_date: Optional[date] = None
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class ScheduleDisableResponse(BaseModel):
    item_id: int
    dropped_doses: int


# ==================== ENDPOINTS ====================

@router.put("/{item_id}", response_model=ScheduleResponse)
async def update_schedule(
    item_id: int,
    request: ScheduleUpdate,
    caller: TriggerCaller = Depends(verify_trigger_caller),
    db: Session = Depends(get_db)
):
    """
    Replace the item's schedule; future scheduled doses are regenerated
    """
    ledger = services.get_dose_ledger_service()
    return await ledger.update_schedule(
        item_id,
        db=db,
        times=request.times,
        frequency=request.frequency,
        days_of_week=request.days_of_week,
        interval_days=request.interval_days,
        start_date=request.start_date,
        window_end=request.window_end,
        user_id=None if caller.automated else caller.user_id
    )


@router.post("/{item_id}/disable", response_model=ScheduleDisableResponse)
async def disable_schedule(
    item_id: int,
    caller: TriggerCaller = Depends(verify_trigger_caller),
    db: Session = Depends(get_db)
):
    ledger = services.get_dose_ledger_service()
    dropped = await ledger.disable_schedule(
        item_id,
        db=db,
        user_id=None if caller.automated else caller.user_id
    )
    return ScheduleDisableResponse(item_id=item_id, dropped_doses=dropped)
