"""
tasks/availability_tasks.py
Periodic slot maintenance:
- Sweep expired holds back to available (freshness only; reads already
  treat an expired hold as available)
- Nightly slot horizon extension for every provider with rules
"""

import asyncio
import logging

from config.database import task_session
from services.availability.holds import sweep_expired_holds
from services.availability.slots import generate_slots, providers_with_rules
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


async def _sweep():
    async with task_session() as db:
        return await sweep_expired_holds(db)


async def _extend_horizon() -> int:
    refreshed = 0
    async with task_session() as db:
        for provider_id in await providers_with_rules(db):
            try:
                await generate_slots(db, provider_id)
                await db.commit()
                refreshed += 1
            except Exception:
                logger.exception(f"Slot regeneration failed for provider {provider_id}")
                await db.rollback()
    return refreshed


@celery_app.task
def release_expired_holds():
    try:
        outcome = asyncio.run(_sweep())
    except Exception:
        logger.exception("Hold sweep failed")
        return None
    return {"released_slots": outcome.released_slots, "deleted_holds": outcome.deleted_holds}


@celery_app.task
def extend_slot_horizon():
    """Advance every provider's rolling window by regenerating their slots."""
    refreshed = asyncio.run(_extend_horizon())
    logger.info(f"Slot horizon extended for {refreshed} provider(s)")
    return refreshed
