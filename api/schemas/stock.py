"""
Stock Schemas
Pydantic models for stock tracking and projections
"""

from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import BaseModel, Field, ConfigDict
from enum import Enum


class AdjustmentReasonEnum(str, Enum):
    """Reasons accepted for manual stock changes"""
    ADJUSTED = "adjusted"
    LOST = "lost"


# ==================== REQUEST SCHEMAS ====================

class RefillRequest(BaseModel):
    """Schema for a refill"""
    amount: int = Field(..., gt=0)
    projected_end_at: Optional[datetime] = None


class AdjustRequest(BaseModel):
    """Schema for a manual correction or loss"""
    delta: int = Field(..., description="Units to add (positive) or remove (negative)")
    reason: AdjustmentReasonEnum = AdjustmentReasonEnum.ADJUSTED


# ==================== RESPONSE SCHEMAS ====================

class StockResponse(BaseModel):
    """Schema for a stock record"""
    item_id: int
    units_left: int
    units_total: int
    projected_end_at: Optional[datetime] = None
    last_refill_at: Optional[datetime] = None
    consumption_history: List[Dict[str, Any]] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class StockProjectionResponse(BaseModel):
    """Forecast for one item"""
    item_id: int
    item_name: str
    units_left: int
    units_total: int
    projected_end_at: Optional[datetime] = None
    last_refill_at: Optional[datetime] = None
    daily_consumption_avg: float
    days_remaining: Optional[int] = None
    consumption_trend: str
    taken_count_7d: int
    scheduled_count_7d: int
    adherence_7d: int
    consumption_history: List[Dict[str, Any]] = Field(default_factory=list)


class StockProjectionList(BaseModel):
    """Projections sorted critical first"""
    projections: List[StockProjectionResponse]
    total: int
