"""
Auth Service
Authorization of trigger calls (user tokens and the automation secret)
"""

import hmac
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import and_
from sqlalchemy.orm import Session

from config import settings
from exceptions import Unauthorized
import models


logger = logging.getLogger(__name__)


@dataclass
class TriggerCaller:
    """Identity behind a trigger call"""
    user_id: Optional[int] = None
    automated: bool = False

    def can_act_for(self, user_id: int) -> bool:
        return self.automated or self.user_id == user_id


class AuthService:
    """
    Service for trigger authorization
    """

    def authorize_trigger(
        self,
        db: Session,
        cron_secret: Optional[str] = None,
        bearer_token: Optional[str] = None
    ) -> TriggerCaller:
        """
        Resolve the caller of a trigger.

        The automation secret wins when it matches; otherwise the bearer token
        must belong to an active user. Anything else is rejected.
        """
        if cron_secret:
            expected = settings.CRON_SECRET
            if expected and hmac.compare_digest(cron_secret, expected):
                return TriggerCaller(automated=True)
            logger.warning("Rejected trigger call with invalid automation secret")
            raise Unauthorized("Invalid automation secret")

        if bearer_token:
            user = db.query(models.User).filter(
                and_(
                    models.User.api_token == bearer_token,
                    models.User.is_active == True  # noqa: E712
                )
            ).first()
            if user:
                return TriggerCaller(user_id=user.id)
            logger.warning("Rejected trigger call with unknown bearer token")
            raise Unauthorized("Invalid or expired token")

        logger.warning("Rejected trigger call without credentials")
        raise Unauthorized("Authentication required")


# Singleton instance
auth_service = AuthService()
