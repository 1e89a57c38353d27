"""
Alarms API Router
Endpoints for free-standing recurring alarms
"""

from typing import Optional
from datetime import datetime
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field, ConfigDict

from api.deps import get_db, resolve_user_id, services, verify_trigger_caller
from models import AlarmRecurrence
from services.auth_service import TriggerCaller


router = APIRouter(prefix="/alarms", tags=["alarms"])


class AlarmCreate(BaseModel):
    """Schema for creating an alarm"""
    title: str = Field(..., min_length=1, max_length=200)
    scheduled_at: datetime = Field(..., description="First occurrence (UTC)")
    recurrence: AlarmRecurrence = AlarmRecurrence.ONCE
    message: Optional[str] = None
    category: str = Field(default="check_in", max_length=50)
    user_id: Optional[int] = None


class AlarmResponse(BaseModel):
    """Schema for alarm response"""
    id: int
    user_id: int
    title: str
    message: Optional[str] = None
    category: Optional[str] = None
    scheduled_at: datetime
    recurrence: AlarmRecurrence
    enabled: bool
    last_triggered: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


@router.post("", response_model=AlarmResponse, status_code=status.HTTP_201_CREATED)
async def create_alarm(
    request: AlarmCreate,
    caller: TriggerCaller = Depends(verify_trigger_caller),
    db: Session = Depends(get_db)
):
    scheduler = services.get_reminder_scheduler()
    return await scheduler.create_alarm(
        resolve_user_id(caller, request.user_id),
        request.title,
        request.scheduled_at,
        db=db,
        recurrence=request.recurrence,
        message=request.message,
        category=request.category
    )


@router.post("/{alarm_id}/disable", response_model=AlarmResponse)
async def disable_alarm(
    alarm_id: int,
    caller: TriggerCaller = Depends(verify_trigger_caller),
    db: Session = Depends(get_db)
):
    """
    Stop future reminders for an alarm
    """
    scheduler = services.get_reminder_scheduler()
    return await scheduler.disable_alarm(
        alarm_id,
        db=db,
        user_id=None if caller.automated else caller.user_id
    )
