"""
services/availability/router.py
Provider availability (rules, overrides, regeneration), the public
calendar projections, and client slot holds.
"""

import logging
from datetime import date
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db, utcnow
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from services.availability import calendar, holds, slots
from shared.middleware.auth import get_current_user, get_optional_user, require_client, require_provider
from shared.models.models import User
from shared.schemas.schemas import (
    AvailabilityOverrideRequest,
    AvailabilityOverrideResponse,
    AvailabilityRuleResponse,
    AvailabilityRulesReplaceRequest,
    CalendarMonthResponse,
    DaySlotsResponse,
    HoldRequest,
    HoldResponse,
    MessageResponse,
    ReleaseRequest,
    ReleaseResponse,
    SlotGenerationResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/availability", tags=["Availability"])


async def _regenerate(db: AsyncSession, redis, provider_id: UUID) -> slots.GenerationResult:
    outcome = await slots.generate_slots(db, provider_id)
    await db.commit()
    await RedisCache(redis).invalidate_calendar(str(provider_id))
    return outcome


def _hold_response(result: holds.HoldResult, viewer_id: UUID) -> HoldResponse:
    return HoldResponse(
        hold_id=result.hold.id,
        provider_id=result.hold.provider_id,
        slots=[calendar.slot_view(s, result.server_time, viewer_id) for s in result.slots],
        hold_expires_at=result.hold.expires_at,
        hold_duration_minutes=result.duration_minutes,
        server_time=result.server_time,
    )


# ── Rules & Overrides ─────────────────────────────────────────

@router.get("/providers/{provider_id}/rules", response_model=List[AvailabilityRuleResponse])
async def get_rules(provider_id: UUID, db: AsyncSession = Depends(get_db)):
    return await slots.list_rules(db, provider_id)


@router.put("/rules", response_model=List[AvailabilityRuleResponse])
async def replace_rules(
    data: AvailabilityRulesReplaceRequest,
    current_user: User = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Replace the provider's whole weekly rule set and regenerate slots.
    Held and booked slots are left untouched.
    """
    rules = await slots.replace_rules(db, current_user.id, [r.model_dump() for r in data.rules])
    await _regenerate(db, redis, current_user.id)
    logger.info(f"Provider {current_user.id} replaced availability with {len(rules)} rule(s)")
    return rules


@router.get(
    "/providers/{provider_id}/overrides",
    response_model=List[AvailabilityOverrideResponse],
)
async def get_overrides(
    provider_id: UUID,
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    return await slots.list_overrides(db, provider_id, date_from, date_to)


@router.put("/overrides", response_model=AvailabilityOverrideResponse)
async def upsert_override(
    data: AvailabilityOverrideRequest,
    current_user: User = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Block a date, or replace its hours with a single window."""
    override = await slots.upsert_override(db, current_user.id, data.model_dump())
    await _regenerate(db, redis, current_user.id)
    return override


@router.delete("/overrides/{day}", response_model=MessageResponse)
async def delete_override(
    day: date,
    current_user: User = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    await slots.delete_override(db, current_user.id, day)
    await _regenerate(db, redis, current_user.id)
    return MessageResponse(message=f"Override for {day.isoformat()} removed")


@router.post("/regenerate", response_model=SlotGenerationResponse)
async def regenerate_slots(
    current_user: User = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    outcome = await _regenerate(db, redis, current_user.id)
    return SlotGenerationResponse(
        created=outcome.created,
        removed=outcome.removed,
        horizon_start=outcome.horizon_start,
        horizon_end=outcome.horizon_end,
    )


# ── Calendar (public) ─────────────────────────────────────────

@router.get("/calendar/{provider_id}", response_model=CalendarMonthResponse)
async def get_month_calendar(
    provider_id: UUID,
    month: int = Query(..., ge=1, le=12),
    year: int = Query(..., ge=2000, le=2100),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Per-day slot counts for one month. Cached briefly in Redis."""
    cache = RedisCache(redis)
    cache_key = cache.calendar_key(str(provider_id), year, month)

    cached = await cache.get(cache_key)
    if cached:
        return cached

    projection = CalendarMonthResponse.model_validate(
        await calendar.month_calendar(db, provider_id, year, month)
    )
    await cache.set(cache_key, projection.model_dump(mode="json"), ttl=settings.CALENDAR_CACHE_TTL)
    return projection


@router.get("/providers/{provider_id}/timeslots", response_model=DaySlotsResponse)
async def get_day_slots(
    provider_id: UUID,
    day: date = Query(..., alias="date"),
    current_user: Optional[User] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    viewer_id = current_user.id if current_user else None
    return await calendar.day_slots(db, provider_id, day, viewer_id)


# ── Holds ─────────────────────────────────────────────────────

@router.post("/slots/hold", response_model=HoldResponse, status_code=status.HTTP_201_CREATED)
async def hold_slots(
    data: HoldRequest,
    current_user: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Hold contiguous slots for HOLD_TTL_MINUTES. Replaces any earlier
    hold of the caller. 409 slot_conflict if another client got there first.
    """
    holder_id = current_user.id
    result = await holds.hold_slots(db, holder_id, data.slot_ids)
    await RedisCache(redis).invalidate_calendar(str(result.hold.provider_id))
    return _hold_response(result, holder_id)


@router.post("/slots/release", response_model=ReleaseResponse)
async def release_slots(
    data: ReleaseRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    outcome = await holds.release_slots(db, current_user.id, data.slot_ids, data.hold_id)
    cache = RedisCache(redis)
    for provider_id in outcome.provider_ids:
        await cache.invalidate_calendar(str(provider_id))
    return ReleaseResponse(released_slots=outcome.released_slots)


@router.get("/holds/me", response_model=Optional[HoldResponse])
async def get_my_hold(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """The caller's active hold, or null."""
    result = await holds.get_active_hold(db, current_user.id, utcnow())
    if result is None:
        return None
    return _hold_response(result, current_user.id)
