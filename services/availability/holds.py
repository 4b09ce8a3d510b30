"""
services/availability/holds.py
Hold Manager: short-lived exclusive claims on contiguous slots.

The conditional UPDATE in hold_slots() is the only critical section.
Expiry is a property of time: a hold whose expires_at has passed is
ignored everywhere, and the periodic sweep only tidies rows up.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import utcnow
from config.settings import settings
from services.availability.slots import claimable, effective_status, ensure_contiguous
from shared.exceptions import NotFoundError, SlotConflict, ValidationError
from shared.models.models import Slot, SlotHold, SlotStatus

logger = logging.getLogger(__name__)

_CLEARED_HOLD = dict(
    status=SlotStatus.AVAILABLE,
    hold_id=None,
    held_by=None,
    hold_expires_at=None,
)


@dataclass
class HoldResult:
    hold: SlotHold
    slots: List[Slot]
    server_time: datetime

    @property
    def duration_minutes(self) -> int:
        return int((self.hold.expires_at - self.hold.created_at).total_seconds() // 60)


@dataclass
class ReleaseResult:
    released_slots: int = 0
    provider_ids: set = field(default_factory=set)


@dataclass
class SweepResult:
    released_slots: int = 0
    deleted_holds: int = 0


async def _load_slots(db: AsyncSession, slot_ids: Sequence[uuid.UUID]) -> List[Slot]:
    result = await db.execute(
        select(Slot).where(Slot.id.in_(slot_ids)).execution_options(populate_existing=True)
    )
    return list(result.scalars())


def validate_selection(slot_ids: Sequence[uuid.UUID]) -> List[uuid.UUID]:
    ids = list(slot_ids)
    if not ids:
        raise ValidationError("Select at least one slot")
    if len(set(ids)) != len(ids):
        raise ValidationError("Duplicate slot ids in selection")
    if len(ids) > settings.MAX_SLOTS_PER_HOLD:
        raise ValidationError(f"A hold can cover at most {settings.MAX_SLOTS_PER_HOLD} slots")
    return ids


async def load_selection(db: AsyncSession, ids: Sequence[uuid.UUID]) -> List[Slot]:
    """Existence, single provider and contiguity checks. Returns slots ordered by start."""
    slots = await _load_slots(db, ids)
    missing = set(ids) - {s.id for s in slots}
    if missing:
        raise NotFoundError("Slot not found", slot_ids=sorted(str(m) for m in missing))
    if len({s.provider_id for s in slots}) > 1:
        raise ValidationError("All slots must belong to the same provider")
    return ensure_contiguous(slots)


async def unavailable_ids(db: AsyncSession, ids: Sequence[uuid.UUID], now: datetime) -> List[uuid.UUID]:
    slots = await _load_slots(db, ids)
    return [s.id for s in slots if effective_status(s, now) != SlotStatus.AVAILABLE]


async def drop_holds(db: AsyncSession, hold_ids: Sequence[uuid.UUID]) -> int:
    """Flip the holds' slots back to available and delete the hold rows."""
    if not hold_ids:
        return 0
    result = await db.execute(
        update(Slot)
        .where(Slot.hold_id.in_(hold_ids), Slot.status == SlotStatus.HELD)
        .values(**_CLEARED_HOLD)
        .execution_options(synchronize_session=False)
    )
    await db.execute(
        delete(SlotHold)
        .where(SlotHold.id.in_(hold_ids))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


# ── Hold ──────────────────────────────────────────────────────

async def hold_slots(
    db: AsyncSession,
    holder_id: uuid.UUID,
    slot_ids: Sequence[uuid.UUID],
    ttl: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> HoldResult:
    """
    Claim contiguous slots for holder_id until now + ttl.
    Any previous hold of the holder is replaced. On conflict the whole
    transaction is rolled back, so the previous hold survives.
    """
    now = now or utcnow()
    ttl = ttl or timedelta(minutes=settings.HOLD_TTL_MINUTES)

    ids = validate_selection(slot_ids)
    ordered = await load_selection(db, ids)
    started = [s.id for s in ordered if s.start <= now]
    if started:
        raise SlotConflict("Slot has already started", slot_ids=started)

    provider_id = ordered[0].provider_id
    ordered_ids = [s.id for s in ordered]
    expires_at = now + ttl

    previous = (
        await db.execute(select(SlotHold.id).where(SlotHold.holder_id == holder_id))
    ).scalars().all()
    await drop_holds(db, previous)

    hold = SlotHold(
        id=uuid.uuid4(),
        holder_id=holder_id,
        provider_id=provider_id,
        slot_ids=[str(i) for i in ordered_ids],
        expires_at=expires_at,
        created_at=now,
    )
    db.add(hold)
    await db.flush()

    result = await db.execute(
        update(Slot)
        .where(Slot.id.in_(ordered_ids), claimable(now))
        .values(
            status=SlotStatus.HELD,
            hold_id=hold.id,
            held_by=holder_id,
            hold_expires_at=expires_at,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != len(ordered_ids):
        await db.rollback()
        taken = await unavailable_ids(db, ordered_ids, now)
        logger.info(f"Hold conflict for holder {holder_id}: slots {taken} unavailable")
        raise SlotConflict(slot_ids=taken)

    await db.commit()
    logger.info(
        f"Holder {holder_id} holds {len(ordered_ids)} slot(s) of provider {provider_id} "
        f"until {expires_at.isoformat()}"
    )
    slots = sorted(await _load_slots(db, ordered_ids), key=lambda s: s.start)
    return HoldResult(hold=hold, slots=slots, server_time=now)


# ── Release ───────────────────────────────────────────────────

async def release_slots(
    db: AsyncSession,
    holder_id: uuid.UUID,
    slot_ids: Optional[Sequence[uuid.UUID]] = None,
    hold_id: Optional[uuid.UUID] = None,
) -> ReleaseResult:
    """
    Release whole holds owned by holder_id. Naming any slot of a hold
    releases the hold. With no arguments every hold of the holder goes.
    Unknown or foreign holds are ignored.
    """
    query = select(SlotHold.id, SlotHold.provider_id).where(SlotHold.holder_id == holder_id)
    if hold_id is not None:
        query = query.where(SlotHold.id == hold_id)
    elif slot_ids:
        owning = select(Slot.hold_id).where(
            Slot.id.in_(list(slot_ids)),
            Slot.held_by == holder_id,
            Slot.hold_id.is_not(None),
        )
        query = query.where(SlotHold.id.in_(owning))

    rows = (await db.execute(query)).all()
    outcome = ReleaseResult(provider_ids={r.provider_id for r in rows})
    outcome.released_slots = await drop_holds(db, [r.id for r in rows])
    await db.commit()

    if rows:
        logger.info(f"Holder {holder_id} released {outcome.released_slots} slot(s)")
    return outcome


# ── Lookups ───────────────────────────────────────────────────

async def get_active_hold(
    db: AsyncSession,
    holder_id: uuid.UUID,
    now: Optional[datetime] = None,
) -> Optional[HoldResult]:
    now = now or utcnow()
    result = await db.execute(
        select(SlotHold)
        .where(SlotHold.holder_id == holder_id, SlotHold.expires_at > now)
        .order_by(SlotHold.created_at.desc())
        .limit(1)
    )
    hold = result.scalar_one_or_none()
    if hold is None:
        return None

    slots = await _load_slots(db, [uuid.UUID(s) for s in hold.slot_ids])
    slots = sorted((s for s in slots if s.hold_id == hold.id), key=lambda s: s.start)
    return HoldResult(hold=hold, slots=slots, server_time=now)


# ── Sweep ─────────────────────────────────────────────────────

async def sweep_expired_holds(db: AsyncSession, now: Optional[datetime] = None) -> SweepResult:
    """Flip expired held slots back to available and purge expired hold rows."""
    now = now or utcnow()
    released = await db.execute(
        update(Slot)
        .where(Slot.status == SlotStatus.HELD, Slot.hold_expires_at <= now)
        .values(**_CLEARED_HOLD)
        .execution_options(synchronize_session=False)
    )
    deleted = await db.execute(
        delete(SlotHold)
        .where(SlotHold.expires_at <= now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    outcome = SweepResult(released_slots=released.rowcount, deleted_holds=deleted.rowcount)
    if outcome.released_slots or outcome.deleted_holds:
        logger.info(
            f"Hold sweep released {outcome.released_slots} slot(s), "
            f"deleted {outcome.deleted_holds} expired hold(s)"
        )
    return outcome
