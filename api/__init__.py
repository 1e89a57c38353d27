"""
API Module
FastAPI routers for the DoseKeeper application
"""

from api.doses import router as doses_router
from api.schedules import router as schedules_router
from api.stock import router as stock_router
from api.reminders import router as reminders_router
from api.alarms import router as alarms_router
from api.adherence import router as adherence_router
from api.alerts import router as alerts_router

from api.deps import (
    get_db,
    verify_trigger_caller,
    resolve_user_id,
    scope_user_id,
    services,
)


__all__ = [
    # Routers
    "doses_router",
    "schedules_router",
    "stock_router",
    "reminders_router",
    "alarms_router",
    "adherence_router",
    "alerts_router",
    # Dependencies
    "get_db",
    "verify_trigger_caller",
    "resolve_user_id",
    "scope_user_id",
    "services",
]


def include_routers(app):
    """
    Include all API routers in the FastAPI app

    Usage:
        from api import include_routers
        include_routers(app)
    """
    from config import settings

    for router in (
        doses_router,
        schedules_router,
        stock_router,
        reminders_router,
        alarms_router,
        adherence_router,
        alerts_router,
    ):
        app.include_router(router, prefix=settings.API_PREFIX)
