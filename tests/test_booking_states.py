"""
tests/test_booking_states.py
Every booking action attempted from every state it is not allowed in
fails with StateError and leaves the booking where it was.
"""

import pytest

from services.booking import service as booking_service
from services.booking.storage import EvidenceFile
from shared.exceptions import StateError
from shared.models.models import BookingStatus, DisputeOutcome
from tests.conftest import InMemoryEvidenceStorage, book, dispute, report_work

PHOTO = EvidenceFile("after.jpg", "image/jpeg", b"\xff\xd8\xff\xe0fake-jpeg")

# Repeating reject or cancel is a no-op rather than an error
ALLOWED = {
    "accept": {BookingStatus.PENDING},
    "reject": {BookingStatus.PENDING, BookingStatus.REJECTED},
    "cancel": {BookingStatus.PENDING, BookingStatus.ACCEPTED, BookingStatus.CANCELLED},
    "delete": {BookingStatus.PENDING},
    "reschedule": {BookingStatus.PENDING, BookingStatus.ACCEPTED},
    "complete": {BookingStatus.ACCEPTED},
    "add_evidence": {BookingStatus.AWAITING_CONFIRMATION},
    "confirm": {BookingStatus.AWAITING_CONFIRMATION},
    "dispute": {BookingStatus.AWAITING_CONFIRMATION},
    "resolve": {BookingStatus.DISPUTED},
}

ILLEGAL = [
    (action, state)
    for action, allowed in ALLOWED.items()
    for state in BookingStatus
    if state not in allowed
]


async def _reach(state, db, client_user, provider, admin_user, service, slots):
    """A booking sitting in `state`."""
    if state == BookingStatus.AWAITING_CONFIRMATION:
        return await report_work(db, client_user, provider, service, slots[:1])
    if state == BookingStatus.DISPUTED:
        return await dispute(db, client_user, provider, service, slots[:1])
    if state == BookingStatus.COMPLETED:
        booking = await report_work(db, client_user, provider, service, slots[:1])
        return await booking_service.confirm_booking(db, booking.id, client_user, confirmed=True)
    if state == BookingStatus.RESOLVED:
        booking = await dispute(db, client_user, provider, service, slots[:1])
        resolved, _ = await booking_service.resolve_dispute(
            db, booking.id, admin_user, "Evidence shows work was completed", DisputeOutcome.PROVIDER
        )
        return resolved

    booking = await book(db, client_user, service, slots[:1])
    if state == BookingStatus.ACCEPTED:
        return await booking_service.accept_booking(db, booking.id, provider)
    if state == BookingStatus.REJECTED:
        return await booking_service.reject_booking(db, booking.id, provider, "Fully booked")
    if state == BookingStatus.CANCELLED:
        return await booking_service.cancel_booking(db, booking.id, client_user, "Plans changed")
    return booking


def _act(action, db, booking_id, client_user, provider, admin_user, slots):
    if action == "accept":
        return booking_service.accept_booking(db, booking_id, provider)
    if action == "reject":
        return booking_service.reject_booking(db, booking_id, provider)
    if action == "cancel":
        return booking_service.cancel_booking(db, booking_id, client_user)
    if action == "delete":
        return booking_service.delete_booking(db, booking_id, client_user)
    if action == "reschedule":
        return booking_service.reschedule_booking(
            db, booking_id, client_user, slots[2].start, slots[3].end
        )
    if action == "complete":
        return booking_service.complete_booking(
            db, booking_id, provider, [PHOTO], InMemoryEvidenceStorage()
        )
    if action == "add_evidence":
        return booking_service.add_evidence(
            db, booking_id, client_user, [PHOTO], InMemoryEvidenceStorage()
        )
    if action == "confirm":
        return booking_service.confirm_booking(db, booking_id, client_user, confirmed=True)
    if action == "dispute":
        return booking_service.confirm_booking(
            db, booking_id, client_user, confirmed=False,
            dispute_reason="Service never started at all",
        )
    return booking_service.resolve_dispute(
        db, booking_id, admin_user, "Photos show the job was not done", DisputeOutcome.CLIENT
    )


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "action,state", ILLEGAL, ids=[f"{a}-from-{s.value}" for a, s in ILLEGAL]
)
async def test_illegal_transition_is_refused(
    action, state, db, client_user, provider, admin_user, service, slots
):
    booking = await _reach(state, db, client_user, provider, admin_user, service, slots)
    assert booking.status == state
    version = booking.version_id

    with pytest.raises(StateError) as exc:
        await _act(action, db, booking.id, client_user, provider, admin_user, slots)

    assert exc.value.extra["current_status"] == state.value
    current = await booking_service.get_booking(db, booking.id)
    assert current.status == state
    assert current.version_id == version


def test_confirm_from_pending_is_in_the_table():
    assert ("confirm", BookingStatus.PENDING) in ILLEGAL
    assert ("dispute", BookingStatus.PENDING) in ILLEGAL
