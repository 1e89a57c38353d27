"""
Reminder Schemas
Pydantic models for reminder generation, dispatch and delivery metrics
"""

from typing import Optional, List, Dict
from pydantic import BaseModel, Field


class GenerateRequest(BaseModel):
    """Schema for a generation run"""
    horizon_hours: int = Field(default=24, ge=1, le=168)
    user_id: Optional[int] = Field(None, description="Automation only; users are scoped to themselves")


class DispatchRequest(BaseModel):
    """Schema for a dispatch run"""
    user_id: Optional[int] = None
    limit: int = Field(default=200, ge=1, le=1000)


class GenerationResponse(BaseModel):
    """Counts from one generation run"""
    dose_intents: int
    alarm_intents: int
    skipped_duplicates: int
    intent_ids: List[int]


class DispatchOutcomeResponse(BaseModel):
    """Outcome for one intent"""
    intent_id: int
    delivered: bool
    skipped: bool
    channel: Optional[str] = None
    status: Optional[str] = None
    attempt_ids: List[int] = Field(default_factory=list)
    reason: Optional[str] = None


class DispatchResponse(BaseModel):
    """Outcomes of a dispatch run"""
    processed: int
    delivered: int
    outcomes: List[DispatchOutcomeResponse]


class ChannelMetrics(BaseModel):
    total: int
    successful: int
    failed: int


class DeliveryMetrics(BaseModel):
    """Aggregated delivery attempts"""
    total: int
    delivered: int
    failed: int
    fallback: int
    success_rate: float
    by_status: Dict[str, int]
    by_channel: Dict[str, ChannelMetrics]
    pending_intents: int
    window_days: Optional[int] = None
