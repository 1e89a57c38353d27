"""
API Dependencies
Common dependencies for FastAPI endpoints
"""

from typing import Generator, Optional
from fastapi import Depends, HTTPException, status, Header
from sqlalchemy.orm import Session

from database import SessionLocal
from services.auth_service import TriggerCaller, auth_service


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency
    Yields a SQLAlchemy session and ensures cleanup
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def verify_trigger_caller(
    authorization: Optional[str] = Header(None),
    x_cron_secret: Optional[str] = Header(None, alias="X-Cron-Secret"),
    db: Session = Depends(get_db)
) -> TriggerCaller:
    """
    Authorize a trigger call before it touches the ledger.
    Raises Unauthorized (401) for missing or invalid credentials.
    """
    return auth_service.authorize_trigger(
        db,
        cron_secret=x_cron_secret,
        bearer_token=_bearer_token(authorization)
    )


def resolve_user_id(caller: TriggerCaller, user_id: Optional[int]) -> int:
    """
    Target user of a per-user call.
    Automation must name the user; users may only act for themselves.
    """
    if caller.automated:
        if user_id is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="user_id is required for automated calls",
            )
        return user_id

    if user_id is not None and user_id != caller.user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot act on behalf of another user",
        )
    return caller.user_id


def scope_user_id(caller: TriggerCaller, user_id: Optional[int]) -> Optional[int]:
    """Like resolve_user_id, but automation may leave the user open (all users)"""
    if caller.automated:
        return user_id
    return resolve_user_id(caller, user_id)


class ServiceDependency:
    """
    Dependency injection for services
    """

    @staticmethod
    def get_dose_ledger_service():
        from services.dose_ledger_service import dose_ledger_service
        return dose_ledger_service

    @staticmethod
    def get_stock_service():
        from services.stock_service import stock_service
        return stock_service

    @staticmethod
    def get_adherence_service():
        from services.adherence_service import adherence_service
        return adherence_service

    @staticmethod
    def get_reminder_scheduler():
        from actions.reminder_scheduler import reminder_scheduler
        return reminder_scheduler

    @staticmethod
    def get_notification_dispatcher():
        from actions.notification_dispatcher import notification_dispatcher
        return notification_dispatcher

    @staticmethod
    def get_alert_engine():
        from actions.alert_engine import alert_engine
        return alert_engine


# Service dependency instances
services = ServiceDependency()
