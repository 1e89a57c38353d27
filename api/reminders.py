"""
Reminders API Router
Trigger endpoints for intent generation, dispatch and delivery metrics
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from api.deps import get_db, scope_user_id, services, verify_trigger_caller
from api.schemas.reminder import (
    DeliveryMetrics,
    DispatchRequest,
    DispatchResponse,
    GenerateRequest,
    GenerationResponse,
)
from services.auth_service import TriggerCaller


router = APIRouter(prefix="/reminders", tags=["reminders"])


@router.post("/generate", response_model=GenerationResponse)
async def generate_reminder_intents(
    request: Optional[GenerateRequest] = None,
    caller: TriggerCaller = Depends(verify_trigger_caller),
    db: Session = Depends(get_db)
):
    """
    Record reminder intents for doses and alarms due within the horizon
    """
    request = request or GenerateRequest()
    scheduler = services.get_reminder_scheduler()
    summary = await scheduler.generate_reminder_intents(
        db,
        horizon_hours=request.horizon_hours,
        user_id=scope_user_id(caller, request.user_id)
    )
    return summary.to_dict()


@router.post("/dispatch", response_model=DispatchResponse)
async def dispatch_due_intents(
    request: Optional[DispatchRequest] = None,
    caller: TriggerCaller = Depends(verify_trigger_caller),
    db: Session = Depends(get_db)
):
    """
    Deliver every intent whose fire time has come
    """
    request = request or DispatchRequest()
    dispatcher = services.get_notification_dispatcher()
    outcomes = await dispatcher.process_due_intents(
        db,
        user_id=scope_user_id(caller, request.user_id),
        limit=request.limit
    )
    return DispatchResponse(
        processed=len(outcomes),
        delivered=sum(1 for o in outcomes if o.delivered),
        outcomes=[o.to_dict() for o in outcomes]
    )


@router.get("/metrics", response_model=DeliveryMetrics)
async def get_delivery_metrics(
    user_id: Optional[int] = Query(None),
    days: Optional[int] = Query(None, ge=1, le=365),
    caller: TriggerCaller = Depends(verify_trigger_caller),
    db: Session = Depends(get_db)
):
    dispatcher = services.get_notification_dispatcher()
    return await dispatcher.get_metrics(
        db,
        user_id=scope_user_id(caller, user_id),
        days=days
    )
