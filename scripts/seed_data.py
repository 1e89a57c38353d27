#!/usr/bin/env python
"""
Seed Data
Script to seed the database with a demo user for development and testing
"""

import sys
import os
import argparse
import logging
import secrets
from datetime import date, datetime, timedelta

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import get_db_context, init_db, drop_db
from models import (
    User, Profile, Item, Schedule, StockRecord, Alarm,
    ItemCategory, ScheduleFrequency, AlarmRecurrence
)


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


DEMO_EMAIL = "demo@dosekeeper.local"

DEMO_ITEMS = [
    {
        "name": "Metformin",
        "category": ItemCategory.MEDICATION,
        "dose_text": "500mg",
        "with_food": True,
        "times": ["08:00", "20:00"],
        "frequency": ScheduleFrequency.DAILY,
        "units": 60,
    },
    {
        "name": "Lisinopril",
        "category": ItemCategory.MEDICATION,
        "dose_text": "10mg",
        "with_food": False,
        "times": ["09:00"],
        "frequency": ScheduleFrequency.DAILY,
        "units": 14,
    },
    {
        "name": "Vitamin D",
        "category": ItemCategory.SUPPLEMENT,
        "dose_text": "1000 IU",
        "with_food": True,
        "times": ["12:00"],
        "frequency": ScheduleFrequency.SPECIFIC_DAYS,
        "days_of_week": [0, 2, 4],
        "units": 30,
    },
]


def seed_demo_user(db) -> User:
    """Create the demo user with profile, items, schedules and stock"""
    existing = db.query(User).filter(User.email == DEMO_EMAIL).first()
    if existing:
        logger.info(f"Demo user already exists (ID: {existing.id})")
        return existing

    user = User(
        email=DEMO_EMAIL,
        api_token=secrets.token_urlsafe(32),
        timezone="America/New_York",
        is_active=True
    )
    db.add(user)
    db.flush()

    db.add(Profile(user_id=user.id, birth_date=date(1956, 5, 15), weight_kg=82.0, height_cm=175.0))

    for data in DEMO_ITEMS:
        item = Item(
            user_id=user.id,
            name=data["name"],
            category=data["category"],
            dose_text=data["dose_text"],
            with_food=data["with_food"],
            is_active=True
        )
        db.add(item)
        db.flush()

        db.add(Schedule(
            item_id=item.id,
            frequency=data["frequency"],
            times=data["times"],
            days_of_week=data.get("days_of_week"),
            start_date=date.today(),
            is_active=True
        ))
        db.add(StockRecord(
            item_id=item.id,
            units_left=data["units"],
            units_total=data["units"],
            consumption_history=[],
            last_refill_at=datetime.utcnow()
        ))

    first_check = datetime.utcnow() + timedelta(hours=1)
    db.add(Alarm(
        user_id=user.id,
        title="Weekly blood pressure check",
        message="Measure and note your blood pressure.",
        category="check_in",
        scheduled_at=first_check,
        anchor_at=first_check,
        recurrence=AlarmRecurrence.WEEKLY,
        enabled=True
    ))

    logger.info(f"Created demo user {user.email} (ID: {user.id}) with token {user.api_token}")
    return user


def main():
    parser = argparse.ArgumentParser(
        description="Seed the database with initial data"
    )
    parser.add_argument(
        "--clear",
        action="store_true",
        help="Clear existing data before seeding"
    )

    args = parser.parse_args()

    if args.clear:
        drop_db()
    init_db()
    with get_db_context() as db:
        seed_demo_user(db)


if __name__ == "__main__":
    main()
