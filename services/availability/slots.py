"""
services/availability/slots.py
Slot Store: materializes a provider's bookable slots for a rolling
horizon from weekly rules and date overrides.

Regeneration only ever adds or removes slots that are effectively
available and in the future. Held and booked slots are never touched,
and a rule change never cancels an in-flight hold.
"""

import bisect
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import utcnow
from config.settings import settings
from shared.exceptions import InvalidRule, NonContiguousSelection, NotFoundError, ValidationError
from shared.models.models import AvailabilityOverride, AvailabilityRule, Slot, SlotStatus

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60


# ── Slot status ───────────────────────────────────────────────

def is_hold_active(slot: Slot, now: datetime) -> bool:
    return (
        slot.status == SlotStatus.HELD
        and slot.hold_expires_at is not None
        and now < slot.hold_expires_at
    )


def effective_status(slot: Slot, now: datetime) -> SlotStatus:
    """A held slot whose hold has expired reads as available."""
    if slot.status == SlotStatus.HELD and not is_hold_active(slot, now):
        return SlotStatus.AVAILABLE
    return slot.status


def claimable(now: datetime):
    """SQL criterion for slots that may be taken right now."""
    return or_(
        Slot.status == SlotStatus.AVAILABLE,
        and_(Slot.status == SlotStatus.HELD, Slot.hold_expires_at <= now),
    )


def ensure_contiguous(slots: Iterable[Slot]) -> List[Slot]:
    """Order by start and require each slot to end exactly where the next begins."""
    ordered = sorted(slots, key=lambda s: s.start)
    for prev, cur in zip(ordered, ordered[1:]):
        if prev.provider_id != cur.provider_id or prev.end != cur.start:
            raise NonContiguousSelection()
    return ordered


# ── Rule validation & expansion ───────────────────────────────

@dataclass(frozen=True)
class Window:
    start_time: time
    end_time: time
    slot_duration: int
    buffer_minutes: int = 0

    @property
    def start_minute(self) -> int:
        return self.start_time.hour * 60 + self.start_time.minute

    @property
    def end_minute(self) -> int:
        # 00:00 as an end time means midnight at the end of the day
        if self.end_time == time(0, 0):
            return MINUTES_PER_DAY
        return self.end_time.hour * 60 + self.end_time.minute


def validate_window(window: Window) -> None:
    """Raise InvalidRule unless the window tiles exactly into slots."""
    if window.slot_duration <= 0:
        raise InvalidRule("slot_duration must be positive")
    if window.buffer_minutes < 0:
        raise InvalidRule("buffer_minutes cannot be negative")
    if window.start_time.second or window.end_time.second:
        raise InvalidRule("Rule times must be whole minutes")
    if window.end_minute <= window.start_minute:
        raise InvalidRule(
            f"end_time {window.end_time.isoformat()} must be after start_time "
            f"{window.start_time.isoformat()}"
        )

    span = window.end_minute - window.start_minute
    step = window.slot_duration + window.buffer_minutes
    # n slots and n-1 buffers must fill the window exactly
    if (span + window.buffer_minutes) % step != 0:
        detail = f"A {span}-minute window cannot be divided into {window.slot_duration}-minute slots"
        if window.buffer_minutes:
            detail += f" with {window.buffer_minutes}-minute buffers"
        raise InvalidRule(detail)


def validate_rule_set(rules: Sequence[Tuple[int, Window]]) -> None:
    """Validate each (day_of_week, window) and reject overlaps on the same day."""
    by_day: Dict[int, List[Window]] = {}
    for day_of_week, window in rules:
        if not 0 <= day_of_week <= 6:
            raise InvalidRule("day_of_week must be between 0 (Monday) and 6 (Sunday)")
        validate_window(window)
        by_day.setdefault(day_of_week, []).append(window)

    for day_of_week, windows in by_day.items():
        windows.sort(key=lambda w: w.start_minute)
        for prev, cur in zip(windows, windows[1:]):
            if cur.start_minute < prev.end_minute:
                raise InvalidRule(f"Rules overlap on day_of_week {day_of_week}")


def expand_window(day: date, window: Window) -> List[Tuple[datetime, datetime]]:
    """Concrete UTC (start, end) pairs for one window on one date."""
    midnight = datetime.combine(day, time(0, 0), tzinfo=timezone.utc)
    cursor = midnight + timedelta(minutes=window.start_minute)
    limit = midnight + timedelta(minutes=window.end_minute)
    duration = timedelta(minutes=window.slot_duration)
    step = duration + timedelta(minutes=window.buffer_minutes)

    out = []
    while cursor + duration <= limit:
        out.append((cursor, cursor + duration))
        cursor += step
    return out


def _rule_window(rule: AvailabilityRule) -> Window:
    return Window(rule.start_time, rule.end_time, rule.slot_duration, rule.buffer_minutes)


def _template_for(day: date, rules_by_weekday: Dict[int, List[AvailabilityRule]]) -> Tuple[int, int]:
    rules = rules_by_weekday.get(day.weekday())
    if rules:
        return rules[0].slot_duration, rules[0].buffer_minutes
    return settings.DEFAULT_SLOT_DURATION_MINUTES, 0


def windows_for_day(
    day: date,
    rules_by_weekday: Dict[int, List[AvailabilityRule]],
    override: Optional[AvailabilityOverride],
) -> List[Window]:
    if override is not None:
        if not override.is_available:
            return []
        if override.start_time is not None and override.end_time is not None:
            duration, buffer = _template_for(day, rules_by_weekday)
            return [Window(override.start_time, override.end_time, duration, buffer)]
    return [_rule_window(r) for r in rules_by_weekday.get(day.weekday(), [])]


def desired_slots(
    rules: Iterable[AvailabilityRule],
    overrides: Iterable[AvailabilityOverride],
    first_day: date,
    days: int,
) -> set:
    rules_by_weekday: Dict[int, List[AvailabilityRule]] = {}
    for rule in rules:
        rules_by_weekday.setdefault(rule.day_of_week, []).append(rule)
    overrides_by_date = {o.date: o for o in overrides}

    wanted = set()
    for offset in range(days):
        day = first_day + timedelta(days=offset)
        for window in windows_for_day(day, rules_by_weekday, overrides_by_date.get(day)):
            wanted.update(expand_window(day, window))
    return wanted


# ── Regeneration ──────────────────────────────────────────────

@dataclass
class GenerationResult:
    created: int
    removed: int
    horizon_start: date
    horizon_end: date


async def generate_slots(
    db: AsyncSession,
    provider_id: uuid.UUID,
    now: Optional[datetime] = None,
    horizon_days: Optional[int] = None,
) -> GenerationResult:
    """
    Bring the provider's future slots in line with their rules and overrides
    for [today, today + horizon). Idempotent. Caller commits.
    """
    now = now or utcnow()
    horizon_days = horizon_days or settings.SLOT_HORIZON_DAYS
    first_day = now.date()
    last_day = first_day + timedelta(days=horizon_days)

    rules = (
        await db.execute(
            select(AvailabilityRule).where(
                AvailabilityRule.provider_id == provider_id,
                AvailabilityRule.is_active == True,  # noqa: E712
            )
        )
    ).scalars().all()
    overrides = (
        await db.execute(
            select(AvailabilityOverride).where(
                AvailabilityOverride.provider_id == provider_id,
                AvailabilityOverride.date >= first_day,
                AvailabilityOverride.date < last_day,
            )
        )
    ).scalars().all()

    wanted = {
        key for key in desired_slots(rules, overrides, first_day, horizon_days) if key[0] >= now
    }

    existing = (
        await db.execute(
            select(Slot).where(Slot.provider_id == provider_id, Slot.start >= now)
        )
    ).scalars().all()

    existing_keys = set()
    removable: List[uuid.UUID] = []
    kept: List[Tuple[datetime, datetime]] = []
    for slot in existing:
        key = (slot.start, slot.end)
        existing_keys.add(key)
        if effective_status(slot, now) == SlotStatus.AVAILABLE and key not in wanted:
            removable.append(slot.id)
        else:
            kept.append(key)

    removed = 0
    if removable:
        result = await db.execute(
            delete(Slot)
            .where(Slot.id.in_(removable), claimable(now))
            .execution_options(synchronize_session=False)
        )
        removed = result.rowcount
        # Removed slots must not linger in the identity map under a reused start
        for slot in existing:
            if slot.id in removable:
                db.expunge(slot)

    kept.sort()
    kept_starts = [start for start, _ in kept]
    created = 0
    for start, end in sorted(wanted):
        if (start, end) in existing_keys:
            continue
        idx = bisect.bisect_left(kept_starts, end) - 1
        if idx >= 0 and kept[idx][1] > start:
            continue  # would overlap a held or booked slot
        db.add(Slot(provider_id=provider_id, start=start, end=end, status=SlotStatus.AVAILABLE))
        created += 1

    await db.flush()
    logger.info(
        f"Regenerated slots for provider {provider_id}: +{created} -{removed} "
        f"({first_day} → {last_day})"
    )
    return GenerationResult(created, removed, first_day, last_day)


# ── Rules & overrides ─────────────────────────────────────────

async def list_rules(db: AsyncSession, provider_id: uuid.UUID) -> List[AvailabilityRule]:
    result = await db.execute(
        select(AvailabilityRule)
        .where(AvailabilityRule.provider_id == provider_id, AvailabilityRule.is_active == True)  # noqa: E712
        .order_by(AvailabilityRule.day_of_week, AvailabilityRule.start_time)
    )
    return list(result.scalars())


async def replace_rules(
    db: AsyncSession,
    provider_id: uuid.UUID,
    rules: Sequence[dict],
) -> List[AvailabilityRule]:
    """Validate then swap the provider's whole weekly rule set. Caller commits."""
    validate_rule_set(
        [
            (
                r["day_of_week"],
                Window(r["start_time"], r["end_time"], r["slot_duration"], r["buffer_minutes"]),
            )
            for r in rules
        ]
    )

    await db.execute(
        update(AvailabilityRule)
        .where(AvailabilityRule.provider_id == provider_id, AvailabilityRule.is_active == True)  # noqa: E712
        .values(is_active=False)
        .execution_options(synchronize_session=False)
    )
    new_rules = [AvailabilityRule(provider_id=provider_id, is_active=True, **r) for r in rules]
    db.add_all(new_rules)
    await db.flush()
    return new_rules


async def list_overrides(
    db: AsyncSession,
    provider_id: uuid.UUID,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
) -> List[AvailabilityOverride]:
    query = select(AvailabilityOverride).where(AvailabilityOverride.provider_id == provider_id)
    if date_from:
        query = query.where(AvailabilityOverride.date >= date_from)
    if date_to:
        query = query.where(AvailabilityOverride.date <= date_to)
    result = await db.execute(query.order_by(AvailabilityOverride.date))
    return list(result.scalars())


async def upsert_override(
    db: AsyncSession,
    provider_id: uuid.UUID,
    data: dict,
    now: Optional[datetime] = None,
) -> AvailabilityOverride:
    """Create or replace the override for one date. Caller commits."""
    now = now or utcnow()
    day: date = data["date"]
    start_time, end_time = data.get("start_time"), data.get("end_time")

    if day < now.date():
        raise ValidationError("Cannot override a date in the past")
    if (start_time is None) != (end_time is None):
        raise ValidationError("start_time and end_time must be given together")

    if data.get("is_available") and start_time is not None:
        rules = await list_rules(db, provider_id)
        by_weekday: Dict[int, List[AvailabilityRule]] = {}
        for rule in rules:
            by_weekday.setdefault(rule.day_of_week, []).append(rule)
        duration, buffer = _template_for(day, by_weekday)
        validate_window(Window(start_time, end_time, duration, buffer))

    result = await db.execute(
        select(AvailabilityOverride).where(
            AvailabilityOverride.provider_id == provider_id,
            AvailabilityOverride.date == day,
        )
    )
    override = result.scalar_one_or_none()
    if override is None:
        override = AvailabilityOverride(provider_id=provider_id, date=day)
        db.add(override)

    override.is_available = bool(data.get("is_available"))
    override.start_time = start_time
    override.end_time = end_time
    override.reason = data.get("reason")
    await db.flush()
    return override


async def delete_override(db: AsyncSession, provider_id: uuid.UUID, day: date) -> None:
    result = await db.execute(
        delete(AvailabilityOverride)
        .where(AvailabilityOverride.provider_id == provider_id, AvailabilityOverride.date == day)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFoundError(f"No override for {day.isoformat()}")


async def providers_with_rules(db: AsyncSession) -> List[uuid.UUID]:
    result = await db.execute(
        select(AvailabilityRule.provider_id)
        .where(AvailabilityRule.is_active == True)  # noqa: E712
        .distinct()
    )
    return list(result.scalars())
