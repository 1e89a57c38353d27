"""
DoseKeeper Backend
FastAPI application for the dose scheduling and forecasting engine
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Configuration and database
from config import settings, engine_config
from database import init_db, DatabaseHealthCheck
from exceptions import EngineError

from api import include_routers

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format=settings.LOG_FORMAT
)
logger = logging.getLogger(__name__)


# ==================== LIFESPAN ====================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup and shutdown"""
    # Startup
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    logger.info(f"Environment: {settings.ENV}")

    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    if not settings.CRON_SECRET:
        logger.warning("CRON_SECRET is not set; automated trigger calls will be rejected")

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.APP_NAME}")


# ==================== APP INITIALIZATION ====================

app = FastAPI(
    title=settings.APP_NAME,
    description="""
    ## DoseKeeper API

    Scheduling and forecasting engine for medication adherence.

    ### Features
    - **Dose Ledger**: Materializes schedules into dose instances and records taken / skipped / missed outcomes
    - **Stock Forecaster**: Projects when each item runs out from recent consumption
    - **Reminder Scheduler**: Turns upcoming doses and alarms into notification intents
    - **Notification Dispatcher**: Delivers intents over push, local, web and sound with retry and fallback
    - **Adherence & Alerts**: Streaks, streak protection and safety-critical alerts
    """,
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Attach modular API routers (prefix /api/v1)
include_routers(app)


# ==================== EXCEPTION HANDLERS ====================

def _error_response(status_code: int, message, **extra) -> JSONResponse:
    content = {
        "error": True,
        "message": message,
        "status_code": status_code,
        "timestamp": datetime.utcnow().isoformat()
    }
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(EngineError)
async def engine_exception_handler(request, exc: EngineError):
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__}: {exc.message}")
    else:
        logger.info(f"{type(exc).__name__}: {exc.message}")
    return _error_response(exc.status_code, exc.message, detail=exc.detail)


@app.exception_handler(ValueError)
async def value_error_handler(request, exc: ValueError):
    return _error_response(400, str(exc))


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc: HTTPException):
    return _error_response(exc.status_code, exc.detail)


@app.exception_handler(Exception)
async def general_exception_handler(request, exc: Exception):
    logger.error(f"Unexpected error: {exc}", exc_info=True)
    return _error_response(500, "An unexpected error occurred" if not settings.DEBUG else str(exc))


# ==================== HEALTH ENDPOINTS ====================

@app.get("/", tags=["Health"])
async def root():
    """Root endpoint - basic health check"""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat()
    }


@app.get("/health", tags=["Health"])
async def health_check():
    """Detailed health check endpoint"""
    db_connected = DatabaseHealthCheck.is_connected()

    return {
        "status": "healthy" if db_connected else "degraded",
        "timestamp": datetime.utcnow().isoformat(),
        "checks": {
            "database": {
                "status": "up" if db_connected else "down",
                "type": "sqlite" if "sqlite" in settings.DATABASE_URL else "postgresql"
            },
            "notifications": {
                "push_gateway_configured": bool(settings.PUSH_GATEWAY_URL),
                "channels": engine_config.CHANNEL_PRIORITY
            },
            "automation": {
                "cron_secret_configured": bool(settings.CRON_SECRET)
            }
        },
        "config": {
            "missed_grace_hours": engine_config.MISSED_GRACE_HOURS,
            "reminder_offsets_minutes": engine_config.REMINDER_OFFSETS_MINUTES,
            "streak_threshold": engine_config.STREAK_THRESHOLD
        },
        "version": settings.APP_VERSION,
        "environment": settings.ENV
    }


# ==================== MAIN ====================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower()
    )
