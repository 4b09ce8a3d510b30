"""
tasks/booking_tasks.py
Auto-confirmation of bookings whose client let the confirmation window
lapse. Reads and transitions enforce the same rule lazily; this task
makes sure nothing stays overdue unobserved.
"""

import asyncio
import logging

from config.database import task_session
from services.booking.service import auto_confirm_overdue
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


async def _auto_confirm() -> int:
    async with task_session() as db:
        return await auto_confirm_overdue(db)


@celery_app.task
def auto_confirm_overdue_bookings():
    try:
        return asyncio.run(_auto_confirm())
    except Exception:
        logger.exception("Auto-confirm run failed")
        return 0
