"""
Adherence Schemas
Pydantic models for streaks and streak protection
"""

from typing import Optional, List
from pydantic import BaseModel


class RecoveryProgress(BaseModel):
    """Progress of the current recovery mission"""
    target_date: Optional[str] = None
    doses_completed: int
    doses_required: int
    recovered_at: Optional[str] = None


class AdherenceStreak(BaseModel):
    """Schema for streak data"""
    user_id: int
    current_streak: int
    longest_streak: int
    this_week_average: Optional[float] = None
    last_week_average: Optional[float] = None
    is_improving: bool
    freezes_available: int
    freezes_used_this_week: int
    last_freeze_date: Optional[str] = None
    protected_dates: List[str]
    recovery: RecoveryProgress
