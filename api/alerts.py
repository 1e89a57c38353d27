"""
Alerts API Router
Endpoints for critical alerts and dismissals
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from api.deps import get_db, resolve_user_id, services, verify_trigger_caller
from api.schemas.alert import CriticalAlertList, DismissResponse
from services.auth_service import TriggerCaller


router = APIRouter(prefix="/alerts", tags=["alerts"])


@router.get("/critical", response_model=CriticalAlertList)
async def get_critical_alerts(
    user_id: Optional[int] = Query(None),
    caller: TriggerCaller = Depends(verify_trigger_caller),
    db: Session = Depends(get_db)
):
    """
    Current alerts, recomputed on every call
    """
    alert_engine = services.get_alert_engine()
    alerts = await alert_engine.get_critical_alerts(resolve_user_id(caller, user_id), db=db)
    return CriticalAlertList(
        alerts=[a.to_dict() for a in alerts],
        total=len(alerts),
        critical_count=sum(1 for a in alerts if a.severity.value == "critical")
    )


@router.post("/{alert_id}/dismiss", response_model=DismissResponse)
async def dismiss_alert(
    alert_id: str,
    user_id: Optional[int] = Query(None),
    caller: TriggerCaller = Depends(verify_trigger_caller),
    db: Session = Depends(get_db)
):
    alert_engine = services.get_alert_engine()
    dismissal = await alert_engine.dismiss_alert(resolve_user_id(caller, user_id), alert_id, db=db)
    return DismissResponse(alert_id=dismissal.alert_id, dismissed_at=dismissal.dismissed_at)
