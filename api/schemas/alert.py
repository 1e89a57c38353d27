"""
Alert Schemas
Pydantic models for critical alerts
"""

from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import BaseModel, Field


class CriticalAlertResponse(BaseModel):
    """One active alert"""
    id: str
    type: str
    severity: str
    title: str
    message: str
    item_id: Optional[int] = None
    item_name: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CriticalAlertList(BaseModel):
    """Active alerts, most severe first"""
    alerts: List[CriticalAlertResponse]
    total: int
    critical_count: int


class DismissResponse(BaseModel):
    alert_id: str
    dismissed_at: datetime
