#!/usr/bin/env python
"""
Engine Tick
Periodic job: materialize doses, generate reminder intents, dispatch due intents.
Run from cron every minute: python scripts/run_engine_tick.py
"""

import sys
import os
import argparse
import asyncio
import logging
from datetime import timedelta
from typing import Optional

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import settings, engine_config
from database import get_db_context, init_db
from services.dose_ledger_service import dose_ledger_service
from actions.reminder_scheduler import reminder_scheduler
from actions.notification_dispatcher import notification_dispatcher


logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL), format=settings.LOG_FORMAT)
logger = logging.getLogger(__name__)


async def run_tick(
    materialize_days: int = engine_config.MATERIALIZE_DEFAULT_DAYS,
    horizon_hours: int = engine_config.REMINDER_HORIZON_HOURS,
    user_id: Optional[int] = None,
    skip_dispatch: bool = False
) -> dict:
    """One pass of the engine; every step is safe to repeat"""
    with get_db_context() as db:
        window_end = dose_ledger_service.clock() + timedelta(days=materialize_days)
        materialized = await dose_ledger_service.materialize_all(db, window_end=window_end, user_id=user_id)

        summary = await reminder_scheduler.generate_reminder_intents(
            db, horizon_hours=horizon_hours, user_id=user_id
        )

        outcomes = []
        if not skip_dispatch:
            outcomes = await notification_dispatcher.process_due_intents(db, user_id=user_id)

    result = {
        "doses_created": sum(materialized.values()),
        "items_materialized": len(materialized),
        "dose_intents": summary.dose_intents,
        "alarm_intents": summary.alarm_intents,
        "dispatched": len(outcomes),
        "delivered": sum(1 for o in outcomes if o.delivered),
    }
    logger.info(f"Tick complete: {result}")
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Run one engine tick (materialize, generate, dispatch)"
    )
    parser.add_argument(
        "--days",
        type=int,
        default=engine_config.MATERIALIZE_DEFAULT_DAYS,
        help="Days ahead to materialize doses"
    )
    parser.add_argument(
        "--horizon-hours",
        type=int,
        default=engine_config.REMINDER_HORIZON_HOURS,
        help="Hours ahead to generate reminder intents"
    )
    parser.add_argument(
        "--user-id",
        type=int,
        default=None,
        help="Limit the tick to one user"
    )
    parser.add_argument(
        "--no-dispatch",
        action="store_true",
        help="Generate intents without delivering them"
    )

    args = parser.parse_args()

    init_db()
    asyncio.run(run_tick(
        materialize_days=args.days,
        horizon_hours=args.horizon_hours,
        user_id=args.user_id,
        skip_dispatch=args.no_dispatch
    ))


if __name__ == "__main__":
    main()
