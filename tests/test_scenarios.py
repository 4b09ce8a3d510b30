"""
tests/test_scenarios.py
End-to-end money flows through the booking state machine and the
provider ledger, driven at the service layer.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from config.database import utcnow
from services.availability import holds
from services.booking import service as booking_service
from services.booking.storage import EvidenceFile
from services.wallet import ledger
from shared.exceptions import AuthorizationError, SlotConflict, StateError, ValidationError
from shared.models.models import BookingAuditLog, BookingMode, BookingStatus, DisputeOutcome
from tests.conftest import InMemoryEvidenceStorage, book, dispute, future_day, make_slots, report_work


async def _balances(db, provider_id):
    wallet = await ledger.get_wallet(db, provider_id)
    return Decimal(wallet.available_balance), Decimal(wallet.pending_balance)


# ── Auto-confirm ──────────────────────────────────────────────

@pytest.mark.asyncio
async def test_overdue_booking_auto_confirms_on_read(db, client_user, provider, service, slots):
    booking = await report_work(db, client_user, provider, service, slots[:2])
    later = utcnow() + timedelta(hours=49)

    loaded = await booking_service.load_booking(db, booking.id, now=later)

    assert loaded.status == BookingStatus.COMPLETED
    assert loaded.auto_confirmed is True
    assert await _balances(db, provider.id) == (Decimal("200.00"), Decimal("0.00"))


@pytest.mark.asyncio
async def test_not_overdue_inside_window(db, client_user, provider, service, slots):
    booking = await report_work(db, client_user, provider, service, slots[:1])
    loaded = await booking_service.load_booking(db, booking.id, now=utcnow() + timedelta(hours=47))
    assert loaded.status == BookingStatus.AWAITING_CONFIRMATION


@pytest.mark.asyncio
async def test_late_dispute_is_refused_after_auto_confirm(db, client_user, provider, service, slots):
    booking = await report_work(db, client_user, provider, service, slots[:1])
    with pytest.raises(StateError):
        await booking_service.confirm_booking(
            db, booking.id, client_user, confirmed=False,
            dispute_reason="Too late to complain about this",
            now=utcnow() + timedelta(hours=49),
        )


@pytest.mark.asyncio
async def test_auto_confirm_job(db, client_user, other_client, provider, service, slots):
    overdue = await report_work(db, client_user, provider, service, slots[:1])
    fresh = await report_work(db, other_client, provider, service, slots[2:3])
    fresh.confirmation_deadline = utcnow() + timedelta(days=10)
    await db.commit()
    overdue_id, fresh_id = overdue.id, fresh.id

    confirmed = await booking_service.auto_confirm_overdue(db, now=utcnow() + timedelta(hours=49))

    assert confirmed == 1
    assert (await booking_service.get_booking(db, overdue_id)).status == BookingStatus.COMPLETED
    assert (await booking_service.get_booking(db, fresh_id)).status == BookingStatus.AWAITING_CONFIRMATION


@pytest.mark.asyncio
async def test_auto_confirm_is_audited_as_system(db, client_user, provider, service, slots):
    booking = await report_work(db, client_user, provider, service, slots[:1])
    await booking_service.load_booking(db, booking.id, now=utcnow() + timedelta(hours=49))

    rows = (
        await db.execute(
            select(BookingAuditLog)
            .where(BookingAuditLog.booking_id == booking.id)
            .order_by(BookingAuditLog.created_at)
        )
    ).scalars().all()
    assert [r.to_status for r in rows] == ["pending", "accepted", "awaiting_confirmation", "completed"]
    assert rows[-1].changed_by_id is None


# ── Confirmation ──────────────────────────────────────────────

@pytest.mark.asyncio
async def test_confirm_releases_net_to_available(db, client_user, provider, service, slots):
    booking = await report_work(db, client_user, provider, service, slots[:2])
    await booking_service.confirm_booking(db, booking.id, client_user, confirmed=True)

    assert await _balances(db, provider.id) == (Decimal("200.00"), Decimal("0.00"))
    report = await ledger.reconcile(db, provider.id)
    assert report["balanced"] is True


@pytest.mark.asyncio
async def test_provider_cannot_confirm_own_work(db, client_user, provider, service, slots):
    booking = await report_work(db, client_user, provider, service, slots[:1])
    with pytest.raises(AuthorizationError):
        await booking_service.confirm_booking(db, booking.id, provider, confirmed=True)


# ── Disputes ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_dispute_freezes_funds(db, client_user, provider, service, slots):
    booking = await dispute(db, client_user, provider, service, slots[:2])
    assert booking.status == BookingStatus.DISPUTED
    assert await ledger.get_wallet(db, provider.id) is None


@pytest.mark.asyncio
async def test_full_refund_to_client(db, client_user, provider, admin_user, service, slots):
    booking = await dispute(db, client_user, provider, service, slots[:2])

    resolved, refund_payment_id = await booking_service.resolve_dispute(
        db, booking.id, admin_user, "Photos show the job was not done", DisputeOutcome.CLIENT
    )

    assert resolved.status == BookingStatus.RESOLVED
    assert resolved.refund_percentage == 100
    assert resolved.client_refund_amount == Decimal("230.00")
    assert resolved.provider_release_amount == Decimal("0.00")
    assert refund_payment_id is None
    assert await _balances(db, provider.id) == (Decimal("0.00"), Decimal("0.00"))


@pytest.mark.asyncio
async def test_half_refund_splits_the_net(db, client_user, provider, admin_user, service, slots):
    booking = await dispute(db, client_user, provider, service, slots[:2])

    resolved, _ = await booking_service.resolve_dispute(
        db, booking.id, admin_user, "Half the rooms were cleaned properly",
        DisputeOutcome.CLIENT, refund_percentage=50,
    )

    assert resolved.client_refund_amount == Decimal("115.00")
    assert resolved.provider_release_amount == Decimal("100.00")
    assert await _balances(db, provider.id) == (Decimal("100.00"), Decimal("0.00"))
    assert (await ledger.reconcile(db, provider.id))["balanced"] is True


@pytest.mark.asyncio
async def test_provider_wins_dispute(db, client_user, provider, admin_user, service, slots):
    booking = await dispute(db, client_user, provider, service, slots[:1])
    resolved, _ = await booking_service.resolve_dispute(
        db, booking.id, admin_user, "Evidence shows work was completed", DisputeOutcome.PROVIDER
    )
    assert resolved.refund_percentage == 0
    assert await _balances(db, provider.id) == (Decimal("100.00"), Decimal("0.00"))


@pytest.mark.asyncio
async def test_resolution_needs_explanation(db, client_user, provider, admin_user, service, slots):
    booking = await dispute(db, client_user, provider, service, slots[:1])
    with pytest.raises(ValidationError):
        await booking_service.resolve_dispute(db, booking.id, admin_user, "ok", DisputeOutcome.CLIENT)


@pytest.mark.asyncio
async def test_only_admin_resolves(db, client_user, provider, service, slots):
    booking = await dispute(db, client_user, provider, service, slots[:1])
    with pytest.raises(AuthorizationError):
        await booking_service.resolve_dispute(
            db, booking.id, provider, "I did the work, honestly", DisputeOutcome.PROVIDER
        )


# ── Reschedule ────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_reschedule_can_overlap_own_slots(db, client_user, service, slots):
    booking = await book(db, client_user, service, slots[:2])

    moved = await booking_service.reschedule_booking(
        db, booking.id, client_user, slots[1].start, slots[2].end
    )

    assert moved.slot_ids == [str(slots[1].id), str(slots[2].id)]
    assert moved.previous_start == slots[0].start


@pytest.mark.asyncio
async def test_reschedule_onto_held_slot_conflicts(db, client_user, other_client, service, slots):
    booking = await book(db, client_user, service, slots[:1])
    await holds.hold_slots(db, other_client.id, [slots[2].id])

    with pytest.raises(SlotConflict):
        await booking_service.reschedule_booking(
            db, booking.id, client_user, slots[2].start, slots[2].end
        )


# ── Walkthroughs ──────────────────────────────────────────────

@pytest.mark.asyncio
async def test_instant_booking_of_two_half_hours_auto_completes(db, client_user, provider, service):
    half_hours = await make_slots(db, provider.id, future_day(4) + timedelta(hours=14), 2, minutes=30)

    booking = await book(db, client_user, service, half_hours, booking_mode=BookingMode.INSTANT)
    assert booking.status == BookingStatus.ACCEPTED
    assert booking.duration_minutes == 60
    assert booking.service_fee == Decimal("100.00")
    assert booking.total_price == Decimal("115.00")

    photo = EvidenceFile("after.jpg", "image/jpeg", b"\xff\xd8\xff\xe0fake-jpeg")
    reported = await booking_service.complete_booking(
        db, booking.id, provider, [photo], InMemoryEvidenceStorage()
    )
    assert reported.status == BookingStatus.AWAITING_CONFIRMATION
    assert len(reported.evidence) == 1

    later = reported.work_completed_at + timedelta(hours=48)
    settled = await booking_service.load_booking(db, booking.id, now=later)

    assert settled.status == BookingStatus.COMPLETED
    assert settled.auto_confirmed is True
    assert await _balances(db, provider.id) == (Decimal("100.00"), Decimal("0.00"))
    assert (await ledger.reconcile(db, provider.id))["balanced"] is True


@pytest.mark.asyncio
async def test_service_never_started_dispute_refunds_everything(
    db, client_user, provider, admin_user, service, slots
):
    booking = await report_work(db, client_user, provider, service, slots[:2])

    disputed = await booking_service.confirm_booking(
        db, booking.id, client_user, confirmed=False, dispute_reason="service never started"
    )
    assert disputed.status == BookingStatus.DISPUTED
    assert disputed.dispute_reason == "service never started"
    assert await ledger.get_wallet(db, provider.id) is None

    resolved, _ = await booking_service.resolve_dispute(
        db, booking.id, admin_user, "Provider never arrived at the address", DisputeOutcome.CLIENT
    )

    assert resolved.refund_percentage == 100
    assert resolved.client_refund_amount == resolved.total_price == Decimal("230.00")
    assert resolved.provider_release_amount == Decimal("0.00")
    assert await _balances(db, provider.id) == (Decimal("0.00"), Decimal("0.00"))
