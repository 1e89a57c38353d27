"""
Adherence API Router
Endpoints for streaks and streak freezes
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from api.deps import get_db, resolve_user_id, services, verify_trigger_caller
from api.schemas.adherence import AdherenceStreak
from services.auth_service import TriggerCaller


router = APIRouter(prefix="/adherence", tags=["adherence"])


@router.get("/streak", response_model=AdherenceStreak)
async def get_adherence_streak(
    user_id: Optional[int] = Query(None),
    caller: TriggerCaller = Depends(verify_trigger_caller),
    db: Session = Depends(get_db)
):
    """
    Get current and longest streaks with weekly comparison
    """
    adherence_service = services.get_adherence_service()
    return await adherence_service.get_streak(resolve_user_id(caller, user_id), db=db)


@router.post("/streak/freeze", response_model=AdherenceStreak)
async def use_streak_freeze(
    user_id: Optional[int] = Query(None),
    caller: TriggerCaller = Depends(verify_trigger_caller),
    db: Session = Depends(get_db)
):
    """
    Spend this week's freeze on a non-counting yesterday
    """
    adherence_service = services.get_adherence_service()
    return await adherence_service.use_streak_freeze(resolve_user_id(caller, user_id), db=db)
