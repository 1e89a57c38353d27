"""
Profile Service
Read-only access to the profile attributes used for alert escalation
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

from sqlalchemy.orm import Session

import models


logger = logging.getLogger(__name__)


def calculate_age(birth_date: Optional[date], on_date: date) -> Optional[int]:
    """
    Completed years between birth_date and on_date.

    Calendar-aware: the year is only counted once the birthday has been
    reached on on_date. A 29 February birthday is reached on 1 March in
    non-leap years.
    """
    if birth_date is None:
        return None
    years = on_date.year - birth_date.year
    if (on_date.month, on_date.day) < (birth_date.month, birth_date.day):
        years -= 1
    return max(years, 0)


def calculate_bmi(weight_kg: Optional[float], height_cm: Optional[float]) -> Optional[float]:
    """Body mass index rounded to one decimal, None when data is missing"""
    if not weight_kg or not height_cm or height_cm <= 0:
        return None
    height_m = height_cm / 100
    return round(weight_kg / (height_m * height_m), 1)


@dataclass
class ProfileSnapshot:
    """Profile values resolved for one evaluation date"""
    user_id: int
    birth_date: Optional[date] = None
    weight_kg: Optional[float] = None
    height_cm: Optional[float] = None
    age: Optional[int] = None
    bmi: Optional[float] = None


class ProfileService:
    """
    Service for profile lookups
    """

    def get_profile_snapshot(self, user_id: int, on_date: date, db: Session) -> ProfileSnapshot:
        profile = db.query(models.Profile).filter(
            models.Profile.user_id == user_id
        ).first()

        if not profile:
            return ProfileSnapshot(user_id=user_id)

        return ProfileSnapshot(
            user_id=user_id,
            birth_date=profile.birth_date,
            weight_kg=profile.weight_kg,
            height_cm=profile.height_cm,
            age=calculate_age(profile.birth_date, on_date),
            bmi=calculate_bmi(profile.weight_kg, profile.height_cm),
        )


# Singleton instance
profile_service = ProfileService()
