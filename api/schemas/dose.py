"""
Dose Schemas
Pydantic models for dose ledger API requests and responses
"""

from typing import Optional, List
from datetime import datetime
from pydantic import BaseModel, Field
from enum import Enum


class DoseActionEnum(str, Enum):
    """Actions a caller can record against a dose"""
    TAKEN = "taken"
    SKIPPED = "skipped"
    MISSED = "missed"
    SNOOZE = "snooze"


class DoseStatusEnum(str, Enum):
    """Dose status values"""
    SCHEDULED = "scheduled"
    TAKEN = "taken"
    SKIPPED = "skipped"
    MISSED = "missed"


# ==================== REQUEST SCHEMAS ====================

class MaterializeRequest(BaseModel):
    """Schema for materializing an item's schedule"""
    item_id: int
    window_end: Optional[datetime] = Field(None, description="Defaults to now + 7 days (UTC)")
    window_start: Optional[datetime] = Field(None, description="Defaults to now (UTC)")


class DoseActionRequest(BaseModel):
    """Schema for recording a dose action"""
    action: DoseActionEnum
    at: Optional[datetime] = Field(None, description="When the dose was taken (UTC), defaults to now")


# ==================== RESPONSE SCHEMAS ====================

class DoseResponse(BaseModel):
    """Dose instance with its status as observed now"""
    id: int
    item_id: int
    schedule_id: Optional[int] = None
    due_at: datetime
    status: DoseStatusEnum
    stored_status: DoseStatusEnum
    taken_at: Optional[datetime] = None
    delay_minutes: Optional[int] = None


class DoseList(BaseModel):
    """List of doses"""
    doses: List[DoseResponse]
    total: int


class MaterializeResponse(BaseModel):
    """Result of a materialization run"""
    item_id: int
    created: int
    doses: List[DoseResponse]
