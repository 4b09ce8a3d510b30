"""
services/booking/service.py
Booking state machine.

    pending → accepted → awaiting_confirmation → completed
                                               ↘ disputed → resolved
    pending → rejected          pending | accepted → cancelled

Every transition appends a BookingAuditLog row, feeds the ledger in the
same transaction, and writes in-app notifications to the counterparty.
An overdue awaiting_confirmation booking is auto-confirmed the moment
anything reads or touches it.
"""

import logging
import random
import string
import uuid
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from config.database import utcnow
from config.settings import settings
from services.availability import holds
from services.availability.slots import claimable, effective_status, ensure_contiguous, is_hold_active
from services.booking.storage import EvidenceFile, EvidenceStorage
from services.notification.service import notify
from services.wallet import ledger
from shared.exceptions import (
    AuthorizationError,
    HoldExpired,
    HoldNotOwned,
    NotFoundError,
    SlotConflict,
    StateError,
    ValidationError,
)
from shared.models.models import (
    AdminAuditLog,
    Booking,
    BookingAuditLog,
    BookingEvidence,
    BookingMode,
    BookingStatus,
    DisputeOutcome,
    EvidenceType,
    Notification,
    NotificationType,
    Payment,
    PaymentStatus,
    PricingType,
    Service,
    Slot,
    SlotHold,
    SlotStatus,
    User,
    UserRole,
)
from shared.utils.pricing import compute_price, split_refund

logger = logging.getLogger(__name__)


# ── Helpers ───────────────────────────────────────────────────

def _generate_booking_number(now: datetime) -> str:
    """Human-readable booking number like SB-2026-X7K9M."""
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=5))
    return f"SB-{now.year}-{suffix}"


def _party(booking: Booking, user: User) -> str:
    """'client', 'provider' or 'admin'. Anyone else is refused."""
    if user.role == UserRole.ADMIN:
        return "admin"
    if user.id == booking.client_id:
        return "client"
    if user.id == booking.provider_id:
        return "provider"
    raise AuthorizationError("Not authorized to access this booking")


def _require_actor(booking: Booking, user: User, *parties: str) -> str:
    party = _party(booking, user)
    if party not in parties:
        raise AuthorizationError(f"Only the {' or '.join(parties)} can do this")
    return party


def _require_state(booking: Booking, action: str, *allowed: BookingStatus) -> None:
    if booking.status not in allowed:
        raise StateError(
            f"Cannot {action} a booking that is '{booking.status.value}'",
            current_status=booking.status.value,
        )


async def _write_transition(
    db: AsyncSession, booking: Booking, to_status: BookingStatus, **changes
) -> None:
    """
    Apply the new status and fields and flush them at once. The UPDATE is
    pinned to the version this request read, so when another request moved
    the booking first nothing is written and StateError reports the status
    it holds now. Callers run their slot and ledger side effects afterwards.
    """
    booking_id = booking.id
    booking.status = to_status
    for field, value in changes.items():
        setattr(booking, field, value)
    try:
        await db.flush()
    except StaleDataError:
        await db.rollback()
        current = await get_booking(db, booking_id)
        logger.info(
            f"Booking {current.booking_number}: lost a concurrent update, "
            f"now '{current.status.value}'"
        )
        raise StateError(
            f"Booking was changed by someone else and is now '{current.status.value}'",
            current_status=current.status.value,
        )


async def _log_status_change(
    db: AsyncSession,
    booking: Booking,
    from_status: Optional[BookingStatus],
    to_status: BookingStatus,
    changed_by_id: Optional[uuid.UUID],
    reason: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> None:
    """Append the audit row and let the ledger consume the event."""
    db.add(
        BookingAuditLog(
            booking_id=booking.id,
            from_status=from_status.value if from_status else None,
            to_status=to_status.value,
            changed_by_id=changed_by_id,
            reason=reason,
            audit_metadata=metadata,
        )
    )
    if from_status != to_status:
        await ledger.on_booking_event(db, booking, to_status)
    logger.info(
        f"Booking {booking.booking_number}: "
        f"{from_status.value if from_status else '-'} -> {to_status.value}"
    )


async def _release_booked_slots(
    db: AsyncSession, booking: Booking, slot_ids: Optional[Sequence[uuid.UUID]] = None
) -> int:
    query = update(Slot).where(Slot.booking_id == booking.id)
    if slot_ids is not None:
        query = query.where(Slot.id.in_(list(slot_ids)))
    result = await db.execute(
        query.values(
            status=SlotStatus.AVAILABLE,
            booking_id=None,
            hold_id=None,
            held_by=None,
            hold_expires_at=None,
        ).execution_options(synchronize_session=False)
    )
    return result.rowcount


def _booking_slot_ids(booking: Booking) -> List[uuid.UUID]:
    return [uuid.UUID(s) for s in booking.slot_ids]


# ── Loading & lazy auto-confirm ───────────────────────────────

async def get_booking(db: AsyncSession, booking_id: uuid.UUID) -> Booking:
    result = await db.execute(
        select(Booking).where(Booking.id == booking_id).execution_options(populate_existing=True)
    )
    booking = result.scalar_one_or_none()
    if not booking:
        raise NotFoundError("Booking not found")
    return booking


def _is_overdue(booking: Booking, now: datetime) -> bool:
    return (
        booking.status == BookingStatus.AWAITING_CONFIRMATION
        and booking.confirmation_deadline is not None
        and now >= booking.confirmation_deadline
    )


async def _auto_confirm(db: AsyncSession, booking: Booking, now: datetime) -> None:
    await _write_transition(
        db, booking, BookingStatus.COMPLETED, auto_confirmed=True, completed_at=now
    )
    await _log_status_change(
        db,
        booking,
        BookingStatus.AWAITING_CONFIRMATION,
        BookingStatus.COMPLETED,
        None,
        reason="Confirmation window elapsed",
        metadata={"confirmation_deadline": booking.confirmation_deadline.isoformat()},
    )
    notify(db, booking.client_id, NotificationType.BOOKING_COMPLETED, booking)
    notify(db, booking.provider_id, NotificationType.BOOKING_COMPLETED, booking)


async def _settle_overdue(db: AsyncSession, booking: Booking, now: datetime) -> Booking:
    if not _is_overdue(booking, now):
        return booking
    booking_id = booking.id
    try:
        await _auto_confirm(db, booking, now)
    except StateError:
        # someone else moved it first; their result stands
        return await get_booking(db, booking_id)
    await db.commit()
    return booking


async def load_booking(
    db: AsyncSession, booking_id: uuid.UUID, now: Optional[datetime] = None
) -> Booking:
    """Fetch a booking, committing an overdue auto-confirm first."""
    booking = await get_booking(db, booking_id)
    return await _settle_overdue(db, booking, now or utcnow())


async def _load_for(
    db: AsyncSession, booking_id: uuid.UUID, user: User, now: datetime, *parties: str
) -> Tuple[Booking, str]:
    """
    Load a booking on behalf of `user`. Authorization is checked before the
    lazy auto-confirm so an outsider's request never changes anything.
    """
    booking = await get_booking(db, booking_id)
    party = _require_actor(booking, user, *parties) if parties else _party(booking, user)
    return await _settle_overdue(db, booking, now), party


async def auto_confirm_overdue(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """
    Beat job body: complete every overdue awaiting_confirmation booking.
    Each booking commits on its own; a failure is logged and skipped.
    """
    now = now or utcnow()
    due = (
        await db.execute(
            select(Booking.id).where(
                Booking.status == BookingStatus.AWAITING_CONFIRMATION,
                Booking.confirmation_deadline <= now,
            )
        )
    ).scalars().all()

    confirmed = 0
    for booking_id in due:
        try:
            booking = await get_booking(db, booking_id)
            if _is_overdue(booking, now):
                await _auto_confirm(db, booking, now)
                await db.commit()
                confirmed += 1
        except StateError:
            logger.info(f"Booking {booking_id} changed before auto-confirm, skipped")
        except Exception:
            logger.exception(f"Auto-confirm failed for booking {booking_id}")
            await db.rollback()

    if confirmed:
        logger.info(f"Auto-confirmed {confirmed} overdue booking(s)")
    return confirmed


# ── Create ────────────────────────────────────────────────────

async def create_booking(
    db: AsyncSession,
    client: User,
    provider_id: uuid.UUID,
    service_id: uuid.UUID,
    slot_ids: Sequence[uuid.UUID],
    booking_mode: BookingMode = BookingMode.REQUEST,
    pricing_type: PricingType = PricingType.HOURLY,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Booking:
    """
    Convert the caller's active hold on exactly `slot_ids` into a booking.
    held → booked is a conditional UPDATE; losing it raises HoldExpired.
    """
    now = now or utcnow()
    client_id = client.id

    ids = holds.validate_selection(slot_ids)
    ordered = await holds.load_selection(db, ids)
    if ordered[0].provider_id != provider_id:
        raise ValidationError("Selected slots do not belong to this provider")

    service = await db.get(Service, service_id)
    if not service or service.provider_id != provider_id:
        raise NotFoundError("Service not found")
    if not service.is_active:
        raise ValidationError("This service is not currently offered")

    active = [s for s in ordered if is_hold_active(s, now)]
    if any(s.held_by != client_id for s in active):
        raise HoldNotOwned()
    if len(active) != len(ordered) or len({s.hold_id for s in active}) != 1:
        if await holds.get_active_hold(db, client_id, now) is None:
            raise HoldExpired()
        raise ValidationError("Your hold covers different slots. Hold the selected slots first")

    hold_id = active[0].hold_id
    hold = await db.get(SlotHold, hold_id)
    if hold is None or set(hold.slot_ids) != {str(i) for i in ids}:
        raise ValidationError("Your hold covers different slots. Hold the selected slots first")

    duration = int((ordered[-1].end - ordered[0].start).total_seconds() // 60)
    price = compute_price(pricing_type, duration, service.hourly_rate, service.package_price)
    instant = booking_mode == BookingMode.INSTANT

    booking = Booking(
        id=uuid.uuid4(),
        booking_number=_generate_booking_number(now),
        client_id=client_id,
        provider_id=provider_id,
        service_id=service_id,
        slot_ids=[str(s.id) for s in ordered],
        start=ordered[0].start,
        end=ordered[-1].end,
        duration_minutes=duration,
        pricing_type=pricing_type,
        booking_mode=booking_mode,
        service_fee=price.service_fee,
        platform_fee=price.platform_fee,
        total_price=price.total_price,
        status=BookingStatus.ACCEPTED if instant else BookingStatus.PENDING,
        accepted_at=now if instant else None,
        notes=notes,
        evidence=[],
    )
    db.add(booking)
    await db.flush()

    result = await db.execute(
        update(Slot)
        .where(
            Slot.id.in_(ids),
            Slot.status == SlotStatus.HELD,
            Slot.hold_id == hold_id,
            Slot.held_by == client_id,
            Slot.hold_expires_at > now,
        )
        .values(
            status=SlotStatus.BOOKED,
            booking_id=booking.id,
            hold_id=None,
            held_by=None,
            hold_expires_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != len(ids):
        await db.rollback()
        logger.info(f"Hold {hold_id} lost before booking could be created")
        raise HoldExpired()

    await db.execute(
        delete(SlotHold).where(SlotHold.id == hold_id).execution_options(synchronize_session=False)
    )
    await _log_status_change(
        db, booking, None, booking.status, client_id,
        metadata={"booking_mode": booking_mode.value, "hold_id": str(hold_id)},
    )
    notify(db, provider_id, NotificationType.BOOKING_REQUESTED, booking)
    if instant:
        notify(db, client_id, NotificationType.BOOKING_ACCEPTED, booking)

    await db.commit()
    return booking


# ── Provider decision & cancellation ──────────────────────────

async def accept_booking(
    db: AsyncSession, booking_id: uuid.UUID, user: User, now: Optional[datetime] = None
) -> Booking:
    now = now or utcnow()
    user_id = user.id
    booking, _ = await _load_for(db, booking_id, user, now, "provider")
    _require_state(booking, "accept", BookingStatus.PENDING)

    await _write_transition(db, booking, BookingStatus.ACCEPTED, accepted_at=now)
    await _log_status_change(db, booking, BookingStatus.PENDING, BookingStatus.ACCEPTED, user_id)
    notify(db, booking.client_id, NotificationType.BOOKING_ACCEPTED, booking)
    await db.commit()
    return booking


async def reject_booking(
    db: AsyncSession,
    booking_id: uuid.UUID,
    user: User,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Booking:
    """Provider declines a pending request. Repeating is a no-op."""
    now = now or utcnow()
    user_id = user.id
    booking, _ = await _load_for(db, booking_id, user, now, "provider")
    if booking.status == BookingStatus.REJECTED:
        return booking
    _require_state(booking, "reject", BookingStatus.PENDING)

    await _write_transition(
        db, booking, BookingStatus.REJECTED, rejected_at=now, rejection_reason=reason
    )
    await _release_booked_slots(db, booking)
    await _log_status_change(
        db, booking, BookingStatus.PENDING, BookingStatus.REJECTED, user_id, reason
    )
    notify(db, booking.client_id, NotificationType.BOOKING_REJECTED, booking)
    await db.commit()
    return booking


async def cancel_booking(
    db: AsyncSession,
    booking_id: uuid.UUID,
    user: User,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Booking:
    """Client or provider cancels before work is reported. Repeating is a no-op."""
    now = now or utcnow()
    user_id = user.id
    booking, party = await _load_for(db, booking_id, user, now, "client", "provider")
    if booking.status == BookingStatus.CANCELLED:
        return booking
    _require_state(booking, "cancel", BookingStatus.PENDING, BookingStatus.ACCEPTED)

    prev_status = booking.status
    await _write_transition(
        db, booking, BookingStatus.CANCELLED,
        cancelled_at=now, cancelled_by=party, cancellation_reason=reason,
    )
    await _release_booked_slots(db, booking)
    await _log_status_change(db, booking, prev_status, BookingStatus.CANCELLED, user_id, reason)

    counterparty = booking.provider_id if party == "client" else booking.client_id
    notify(db, counterparty, NotificationType.BOOKING_CANCELLED, booking)
    await db.commit()
    return booking


async def cancel_for_failed_payment(db: AsyncSession, booking: Booking, now: datetime) -> bool:
    """
    System cancellation when the processor reports a failed payment. Caller
    commits. A booking moved concurrently raises StateError and the webhook
    is redelivered.
    """
    if booking.status not in (BookingStatus.PENDING, BookingStatus.ACCEPTED):
        return False
    prev_status = booking.status
    await _write_transition(
        db, booking, BookingStatus.CANCELLED,
        cancelled_at=now, cancelled_by="system", cancellation_reason="Payment failed",
    )
    await _release_booked_slots(db, booking)
    await _log_status_change(
        db, booking, prev_status, BookingStatus.CANCELLED, None, "Payment failed"
    )
    notify(db, booking.client_id, NotificationType.PAYMENT_FAILED, booking)
    notify(db, booking.provider_id, NotificationType.BOOKING_CANCELLED, booking)
    return True


async def delete_booking(
    db: AsyncSession, booking_id: uuid.UUID, user: User, now: Optional[datetime] = None
) -> None:
    """
    Hard-delete a pending booking and free its slots. Only the client or
    an admin may do this, and never once money has been captured.
    """
    now = now or utcnow()
    user_id = user.id
    booking, party = await _load_for(db, booking_id, user, now, "client", "admin")
    _require_state(booking, "delete", BookingStatus.PENDING)

    payment = (
        await db.execute(select(Payment).where(Payment.booking_id == booking.id))
    ).scalar_one_or_none()
    if payment is not None and payment.status == PaymentStatus.CAPTURED:
        raise StateError(
            "Booking has a captured payment; cancel it instead",
            current_status=booking.status.value,
        )

    # Same version pin as _write_transition; also locks the row until commit
    claimed = await db.execute(
        update(Booking)
        .where(
            Booking.id == booking.id,
            Booking.version_id == booking.version_id,
            Booking.status == BookingStatus.PENDING,
        )
        .values(version_id=Booking.version_id + 1)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        await db.rollback()
        current = await get_booking(db, booking_id)
        raise StateError(
            f"Booking was changed by someone else and is now '{current.status.value}'",
            current_status=current.status.value,
        )

    notice = notify(db, booking.provider_id, NotificationType.BOOKING_CANCELLED, booking)
    notice.booking_id = None
    await _release_booked_slots(db, booking)
    await db.execute(
        update(Notification)
        .where(Notification.booking_id == booking.id)
        .values(booking_id=None)
        .execution_options(synchronize_session=False)
    )
    if payment is not None:
        await db.execute(delete(Payment).where(Payment.id == payment.id))
    await db.execute(delete(BookingAuditLog).where(BookingAuditLog.booking_id == booking.id))
    await db.execute(
        delete(Booking)
        .where(Booking.id == booking.id)
        .execution_options(synchronize_session=False)
    )

    if party == "admin":
        db.add(
            AdminAuditLog(
                admin_id=user_id,
                action="delete_booking",
                entity_type="booking",
                entity_id=str(booking.id),
                payload={"booking_number": booking.booking_number},
            )
        )
    db.expunge(booking)
    await db.commit()
    logger.info(f"Booking {booking.booking_number} deleted by {party} {user_id}")


# ── Dual confirmation ─────────────────────────────────────────

def _evidence_rows(
    booking: Booking,
    uploaded_by: uuid.UUID,
    keys: Sequence[str],
    evidence_type: EvidenceType,
    caption: Optional[str],
    now: datetime,
) -> List[BookingEvidence]:
    return [
        BookingEvidence(
            booking_id=booking.id,
            uploaded_by=uploaded_by,
            evidence_type=evidence_type,
            file_ref=key,
            caption=caption,
            uploaded_at=now,
        )
        for key in keys
    ]


async def complete_booking(
    db: AsyncSession,
    booking_id: uuid.UUID,
    user: User,
    files: Sequence[EvidenceFile],
    storage: EvidenceStorage,
    notes: Optional[str] = None,
    evidence_type: EvidenceType = EvidenceType.AFTER,
    caption: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Booking:
    """
    Provider reports the work done with photo evidence. The client then
    has CONFIRMATION_WINDOW_HOURS to confirm or dispute.
    """
    now = now or utcnow()
    user_id = user.id
    booking, _ = await _load_for(db, booking_id, user, now, "provider")
    _require_state(booking, "complete", BookingStatus.ACCEPTED)
    if not files:
        raise ValidationError("At least one evidence photo is required")

    keys = [await storage.upload(booking.id, f) for f in files]

    await _write_transition(
        db, booking, BookingStatus.AWAITING_CONFIRMATION,
        work_completed_at=now,
        completion_notes=notes,
        confirmation_deadline=now + timedelta(hours=settings.CONFIRMATION_WINDOW_HOURS),
    )
    booking.evidence.extend(_evidence_rows(booking, user_id, keys, evidence_type, caption, now))
    await _log_status_change(
        db, booking, BookingStatus.ACCEPTED, BookingStatus.AWAITING_CONFIRMATION, user_id,
        metadata={"evidence_count": len(keys)},
    )
    notify(db, booking.client_id, NotificationType.WORK_COMPLETED, booking)
    await db.commit()
    return booking


async def add_evidence(
    db: AsyncSession,
    booking_id: uuid.UUID,
    user: User,
    files: Sequence[EvidenceFile],
    storage: EvidenceStorage,
    evidence_type: EvidenceType = EvidenceType.OTHER,
    caption: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[BookingEvidence]:
    now = now or utcnow()
    user_id = user.id
    booking, _ = await _load_for(db, booking_id, user, now, "client", "provider")
    _require_state(booking, "add evidence to", BookingStatus.AWAITING_CONFIRMATION)

    keys = [await storage.upload(booking.id, f) for f in files]
    rows = _evidence_rows(booking, user_id, keys, evidence_type, caption, now)
    booking.evidence.extend(rows)
    await db.commit()
    return rows


async def confirm_booking(
    db: AsyncSession,
    booking_id: uuid.UUID,
    user: User,
    confirmed: bool,
    dispute_reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Booking:
    """Client confirms (→ completed) or disputes (→ disputed, funds frozen)."""
    now = now or utcnow()
    user_id = user.id
    booking, _ = await _load_for(db, booking_id, user, now, "client")
    _require_state(booking, "confirm", BookingStatus.AWAITING_CONFIRMATION)

    if confirmed:
        await _write_transition(
            db, booking, BookingStatus.COMPLETED, confirmed_at=now, completed_at=now
        )
        await _log_status_change(
            db, booking, BookingStatus.AWAITING_CONFIRMATION, BookingStatus.COMPLETED, user_id
        )
        notify(db, booking.provider_id, NotificationType.BOOKING_COMPLETED, booking)
    else:
        reason = (dispute_reason or "").strip()
        if len(reason) < settings.DISPUTE_REASON_MIN_LENGTH:
            raise ValidationError(
                f"Dispute reason must be at least {settings.DISPUTE_REASON_MIN_LENGTH} characters"
            )
        await _write_transition(
            db, booking, BookingStatus.DISPUTED, dispute_reason=reason, disputed_at=now
        )
        await _log_status_change(
            db, booking, BookingStatus.AWAITING_CONFIRMATION, BookingStatus.DISPUTED, user_id, reason
        )
        notify(db, booking.provider_id, NotificationType.BOOKING_DISPUTED, booking)

    await db.commit()
    return booking


async def resolve_dispute(
    db: AsyncSession,
    booking_id: uuid.UUID,
    admin: User,
    resolution: str,
    resolved_in_favor_of: DisputeOutcome,
    refund_percentage: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Tuple[Booking, Optional[uuid.UUID]]:
    """
    Admin settles a dispute. Returns the booking and, when a captured
    payment must be partly or fully refunded, that payment's id.
    """
    now = now or utcnow()
    admin_id = admin.id
    booking, _ = await _load_for(db, booking_id, admin, now, "admin")
    _require_state(booking, "resolve", BookingStatus.DISPUTED)

    resolution = resolution.strip()
    if len(resolution) < settings.RESOLUTION_MIN_LENGTH:
        raise ValidationError(
            f"Resolution must be at least {settings.RESOLUTION_MIN_LENGTH} characters"
        )
    if refund_percentage is None:
        refund_percentage = 100 if resolved_in_favor_of == DisputeOutcome.CLIENT else 0
    split = split_refund(booking.total_price, booking.service_fee, refund_percentage)

    await _write_transition(
        db, booking, BookingStatus.RESOLVED,
        resolution=resolution,
        resolved_in_favor_of=resolved_in_favor_of,
        refund_percentage=refund_percentage,
        client_refund_amount=split["client_refund_amount"],
        provider_release_amount=split["provider_release_amount"],
        resolved_at=now,
        resolved_by_id=admin_id,
    )
    await _log_status_change(
        db, booking, BookingStatus.DISPUTED, BookingStatus.RESOLVED, admin_id, resolution,
        metadata={k: str(v) for k, v in split.items()},
    )
    notify(db, booking.client_id, NotificationType.DISPUTE_RESOLVED, booking)
    notify(db, booking.provider_id, NotificationType.DISPUTE_RESOLVED, booking)
    db.add(
        AdminAuditLog(
            admin_id=admin_id,
            action="resolve_dispute",
            entity_type="booking",
            entity_id=str(booking.id),
            payload={
                "resolved_in_favor_of": resolved_in_favor_of.value,
                "refund_percentage": refund_percentage,
            },
        )
    )

    payment = (
        await db.execute(
            select(Payment).where(
                Payment.booking_id == booking.id, Payment.status == PaymentStatus.CAPTURED
            )
        )
    ).scalar_one_or_none()
    await db.commit()

    refund_payment_id = None
    if payment is not None and booking.client_refund_amount > 0:
        refund_payment_id = payment.id
    return booking, refund_payment_id


# ── Reschedule ────────────────────────────────────────────────

async def reschedule_booking(
    db: AsyncSession,
    booking_id: uuid.UUID,
    user: User,
    start: datetime,
    end: datetime,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Booking:
    """
    Move a pending or accepted booking onto the provider's slots that
    exactly tile [start, end). Slots already booked by this booking may
    be reused; the rest are taken with a conditional UPDATE.
    """
    now = now or utcnow()
    actor_id = user.id
    booking, _ = await _load_for(db, booking_id, user, now, "client", "provider")
    _require_state(booking, "reschedule", BookingStatus.PENDING, BookingStatus.ACCEPTED)

    if reason and len(reason) > settings.RESCHEDULE_REASON_MAX_LENGTH:
        raise ValidationError(
            f"Reason must be at most {settings.RESCHEDULE_REASON_MAX_LENGTH} characters"
        )
    if end <= start:
        raise ValidationError("end_date must be after start_date")
    if end - start != booking.end - booking.start:
        raise ValidationError(
            f"New time must keep the booking's duration of {booking.duration_minutes} minutes"
        )
    if start <= now:
        raise ValidationError("New time must be in the future")
    if start == booking.start:
        raise ValidationError("Booking is already scheduled at this time")

    candidates = (
        await db.execute(
            select(Slot)
            .where(Slot.provider_id == booking.provider_id, Slot.start >= start, Slot.start < end)
            .order_by(Slot.start)
            .execution_options(populate_existing=True)
        )
    ).scalars().all()
    if not candidates or candidates[0].start != start:
        raise SlotConflict("No slot starts at the requested time")
    ordered = ensure_contiguous(candidates)
    if ordered[-1].end != end:
        raise SlotConflict("The provider's slots do not cover the requested time")

    reused = {s.id for s in ordered if s.booking_id == booking.id}
    own_holds = {s.hold_id for s in ordered if is_hold_active(s, now) and s.held_by == actor_id}
    taken = [
        s.id
        for s in ordered
        if s.id not in reused
        and s.hold_id not in own_holds
        and effective_status(s, now) != SlotStatus.AVAILABLE
    ]
    if taken:
        raise SlotConflict(slot_ids=taken)

    keep = {s.id for s in ordered}
    new_ids = [s.id for s in ordered if s.id not in reused]
    freed_ids = [sid for sid in _booking_slot_ids(booking) if sid not in keep]
    previous_start, previous_end = booking.start, booking.end

    # Booking row first: a concurrent cancel or accept stops us before any slot moves
    await _write_transition(
        db, booking, booking.status,
        previous_start=previous_start,
        previous_end=previous_end,
        start=start,
        end=end,
        slot_ids=[str(s.id) for s in ordered],
        reschedule_reason=reason,
        rescheduled_at=now,
        reschedule_count=(booking.reschedule_count or 0) + 1,
    )

    await holds.drop_holds(db, list(own_holds))
    result = await db.execute(
        update(Slot)
        .where(Slot.id.in_(new_ids), claimable(now))
        .values(
            status=SlotStatus.BOOKED,
            booking_id=booking_id,
            hold_id=None,
            held_by=None,
            hold_expires_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != len(new_ids):
        await db.rollback()
        lost = await holds.unavailable_ids(db, new_ids, now)
        raise SlotConflict(slot_ids=lost)

    await _release_booked_slots(db, booking, freed_ids)
    await _log_status_change(
        db, booking, booking.status, booking.status, actor_id, reason,
        metadata={
            "action": "reschedule",
            "previous_start": previous_start.isoformat(),
            "previous_end": previous_end.isoformat(),
            "new_start": start.isoformat(),
            "new_end": end.isoformat(),
        },
    )
    counterparty = booking.provider_id if actor_id == booking.client_id else booking.client_id
    notify(db, counterparty, NotificationType.BOOKING_RESCHEDULED, booking)
    await db.commit()
    return booking


# ── Reads ─────────────────────────────────────────────────────

async def get_visible_booking(
    db: AsyncSession, booking_id: uuid.UUID, user: User, now: Optional[datetime] = None
) -> Booking:
    booking, _ = await _load_for(db, booking_id, user, now or utcnow())
    return booking


async def list_bookings(
    db: AsyncSession,
    user: User,
    status: Optional[BookingStatus] = None,
    page: int = 1,
    page_size: int = 10,
    now: Optional[datetime] = None,
) -> Tuple[List[Booking], int]:
    """The caller's bookings as client or provider, newest first."""
    now = now or utcnow()
    own = or_(Booking.client_id == user.id, Booking.provider_id == user.id)

    overdue = (
        await db.execute(
            select(Booking.id).where(
                own,
                Booking.status == BookingStatus.AWAITING_CONFIRMATION,
                Booking.confirmation_deadline <= now,
            )
        )
    ).scalars().all()
    for booking_id in overdue:
        await load_booking(db, booking_id, now)

    query = select(Booking).where(own)
    if status is not None:
        query = query.where(Booking.status == status)
    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(
        query.order_by(Booking.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars()), total or 0


async def list_audit_log(db: AsyncSession, booking_id: uuid.UUID) -> List[BookingAuditLog]:
    await get_booking(db, booking_id)
    result = await db.execute(
        select(BookingAuditLog)
        .where(BookingAuditLog.booking_id == booking_id)
        .order_by(BookingAuditLog.created_at)
    )
    return list(result.scalars())
