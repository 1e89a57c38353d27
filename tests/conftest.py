"""
Pytest Configuration and Shared Fixtures
========================================

This module provides shared fixtures for all DoseKeeper tests.
Fixtures include database sessions, a frozen clock, test clients and sample data.
"""

import os
import sys
from datetime import datetime, date, timedelta
from typing import Callable, Generator, Optional

# Keep the application engine off the developer database
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker, Session

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import settings
from database import Base, build_engine
from models import (
    User, Profile, Item, Schedule, StockRecord, DoseInstance,
    DoseStatus, ItemCategory, ScheduleFrequency
)


# Wednesday, noon UTC
NOW = datetime(2026, 3, 11, 12, 0)

CRON_SECRET = "test-cron-secret"
USER_TOKEN = "user-token-123"
OTHER_TOKEN = "other-token-456"


# ==================== DATABASE FIXTURES ====================

@pytest.fixture(scope="function")
def test_engine():
    """Create a test database engine with in-memory SQLite"""
    engine = build_engine("sqlite://")

    # Create all tables
    Base.metadata.create_all(bind=engine)

    yield engine

    # Cleanup
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(test_engine) -> Generator[Session, None, None]:
    """Create a test database session"""
    TestingSessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_engine
    )

    session = TestingSessionLocal()

    try:
        yield session
    finally:
        session.rollback()
        session.close()


# ==================== CLOCK ====================

@pytest.fixture
def fixed_now(monkeypatch) -> datetime:
    """Freeze every engine singleton at NOW"""
    from services.dose_ledger_service import dose_ledger_service
    from services.stock_service import stock_service
    from services.adherence_service import adherence_service
    from actions.reminder_scheduler import reminder_scheduler
    from actions.notification_dispatcher import notification_dispatcher
    from actions.alert_engine import alert_engine

    for service in (
        dose_ledger_service,
        stock_service,
        adherence_service,
        reminder_scheduler,
        notification_dispatcher,
        alert_engine,
    ):
        monkeypatch.setattr(service, "clock", lambda: NOW)
    return NOW


# ==================== API CLIENT ====================

@pytest.fixture(scope="function")
def client(db_session: Session, fixed_now, monkeypatch) -> Generator[TestClient, None, None]:
    """Create a FastAPI test client with database override"""
    from app import app
    from api.deps import get_db

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    monkeypatch.setattr(settings, "CRON_SECRET", CRON_SECRET)
    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def user_headers() -> dict:
    return {"Authorization": f"Bearer {USER_TOKEN}"}


@pytest.fixture
def cron_headers() -> dict:
    return {"X-Cron-Secret": CRON_SECRET}


# ==================== SAMPLE DATA FIXTURES ====================

@pytest.fixture
def test_user(db_session: Session) -> User:
    """Create and return a test user"""
    user = User(email="jane@example.com", api_token=USER_TOKEN, timezone="UTC", is_active=True)
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture
def other_user(db_session: Session) -> User:
    user = User(email="sam@example.com", api_token=OTHER_TOKEN, timezone="UTC", is_active=True)
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture
def test_profile(db_session: Session, test_user: User) -> Profile:
    """Adult profile with a normal BMI (24.5)"""
    profile = Profile(user_id=test_user.id, birth_date=date(1980, 6, 1), weight_kg=75.0, height_cm=175.0)
    db_session.add(profile)
    db_session.commit()
    db_session.refresh(profile)
    return profile


@pytest.fixture
def test_item(db_session: Session, test_user: User) -> Item:
    """Create and return a test medication"""
    item = Item(
        user_id=test_user.id,
        name="Metformin",
        category=ItemCategory.MEDICATION,
        dose_text="500mg",
        with_food=True,
        is_active=True
    )
    db_session.add(item)
    db_session.commit()
    db_session.refresh(item)
    return item


@pytest.fixture
def test_schedule(db_session: Session, test_item: Item) -> Schedule:
    """Twice daily at 08:00 and 20:00"""
    schedule = Schedule(
        item_id=test_item.id,
        frequency=ScheduleFrequency.DAILY,
        times=["08:00", "20:00"],
        start_date=date(2026, 1, 1),
        is_active=True
    )
    db_session.add(schedule)
    db_session.commit()
    db_session.refresh(schedule)
    return schedule


@pytest.fixture
def test_stock(db_session: Session, test_item: Item) -> StockRecord:
    stock = StockRecord(item_id=test_item.id, units_left=14, units_total=30, consumption_history=[])
    db_session.add(stock)
    db_session.commit()
    db_session.refresh(stock)
    return stock


@pytest.fixture
def make_dose(db_session: Session) -> Callable[..., DoseInstance]:
    """Factory for dose instances with a given outcome"""

    def _make_dose(
        item: Item,
        due_at: datetime,
        status: DoseStatus = DoseStatus.SCHEDULED,
        taken_at: Optional[datetime] = None
    ) -> DoseInstance:
        if status == DoseStatus.TAKEN and taken_at is None:
            taken_at = due_at
        dose = DoseInstance(
            item_id=item.id,
            due_at=due_at,
            status=status,
            taken_at=taken_at,
            delay_minutes=(
                max(0, int((taken_at - due_at).total_seconds() // 60)) if taken_at else None
            )
        )
        db_session.add(dose)
        db_session.commit()
        db_session.refresh(dose)
        return dose

    return _make_dose


@pytest.fixture
def make_history(make_dose) -> Callable[..., None]:
    """One dose per day at 08:00 for the given days (days ago -> status)"""

    def _make_history(item: Item, outcomes: dict, today: date = NOW.date()) -> None:
        for days_ago, status in outcomes.items():
            day = today - timedelta(days=days_ago)
            make_dose(item, datetime.combine(day, datetime.min.time()).replace(hour=8), status)

    return _make_history


# ==================== MARKERS ====================

def pytest_configure(config):
    """Register custom markers"""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "api: mark test as an API test")
    config.addinivalue_line("markers", "database: mark test as requiring database")
