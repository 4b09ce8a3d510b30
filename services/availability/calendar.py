"""
services/availability/calendar.py
Calendar Aggregator: read-only month and day projections of a
provider's slots. Counts use effective status, so an expired hold
already reads as available.
"""

import calendar as pycalendar
import uuid
from collections import Counter
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import utcnow
from services.availability.slots import effective_status, is_hold_active, list_overrides
from shared.exceptions import ValidationError
from shared.models.models import Slot, SlotStatus


def _utc_midnight(day: date) -> datetime:
    return datetime.combine(day, time(0, 0), tzinfo=timezone.utc)


def day_status(available: int, held: int, booked: int, total: int) -> str:
    if available > 0:
        return "available"
    if total == 0:
        return "unavailable"
    if booked == total:
        return "fully_booked"
    return "held"


async def _slots_between(
    db: AsyncSession, provider_id: uuid.UUID, start: datetime, end: datetime
) -> List[Slot]:
    result = await db.execute(
        select(Slot)
        .where(Slot.provider_id == provider_id, Slot.start >= start, Slot.start < end)
        .order_by(Slot.start)
    )
    return list(result.scalars())


async def month_calendar(
    db: AsyncSession,
    provider_id: uuid.UUID,
    year: int,
    month: int,
    now: Optional[datetime] = None,
) -> dict:
    """One entry per day of the month plus the month's overrides."""
    if not 1 <= month <= 12:
        raise ValidationError("month must be between 1 and 12")
    now = now or utcnow()

    days_in_month = pycalendar.monthrange(year, month)[1]
    first_day = date(year, month, 1)
    last_day = date(year, month, days_in_month)

    slots = await _slots_between(
        db, provider_id, _utc_midnight(first_day), _utc_midnight(last_day + timedelta(days=1))
    )
    overrides = await list_overrides(db, provider_id, first_day, last_day)
    blocked = {o.date for o in overrides if not o.is_available}

    counts: Dict[date, Counter] = {}
    for slot in slots:
        counts.setdefault(slot.start.date(), Counter())[effective_status(slot, now)] += 1

    days = []
    for offset in range(days_in_month):
        day = first_day + timedelta(days=offset)
        tally = counts.get(day, Counter())
        available = tally[SlotStatus.AVAILABLE]
        held = tally[SlotStatus.HELD]
        booked = tally[SlotStatus.BOOKED]
        total = available + held + booked
        days.append(
            {
                "date": day,
                "available_count": available,
                "held_count": held,
                "booked_count": booked,
                "total_count": total,
                "is_blocked": day in blocked,
                "status": day_status(available, held, booked, total),
            }
        )

    return {
        "provider_id": provider_id,
        "year": year,
        "month": month,
        "days": days,
        "overrides": overrides,
    }


async def day_slots(
    db: AsyncSession,
    provider_id: uuid.UUID,
    day: date,
    viewer_id: Optional[uuid.UUID] = None,
    now: Optional[datetime] = None,
) -> dict:
    now = now or utcnow()
    slots = await _slots_between(
        db, provider_id, _utc_midnight(day), _utc_midnight(day + timedelta(days=1))
    )
    return {
        "provider_id": provider_id,
        "date": day,
        "slots": [slot_view(s, now, viewer_id) for s in slots],
    }


def slot_view(slot: Slot, now: datetime, viewer_id: Optional[uuid.UUID] = None) -> dict:
    active = is_hold_active(slot, now)
    return {
        "id": slot.id,
        "start": slot.start,
        "end": slot.end,
        "status": effective_status(slot, now).value,
        "is_held": active,
        "hold_expires_at": slot.hold_expires_at if active else None,
        "held_by_me": bool(active and viewer_id is not None and slot.held_by == viewer_id),
    }
