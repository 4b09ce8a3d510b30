"""
tests/test_reviews.py
Tests for review creation, eligibility checks, the public provider
listing and admin moderation.
"""

from datetime import timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import utcnow
from services.booking import service as booking_service
from shared.models.models import AdminAuditLog, DisputeOutcome, Service, User
from tests.conftest import auth_headers, book, dispute, report_work


async def _completed(db, client_user, provider, service, slot_list):
    booking = await report_work(db, client_user, provider, service, slot_list)
    return await booking_service.confirm_booking(db, booking.id, client_user, confirmed=True)


async def _review(client, user, booking_id, rating=5, comment="Spotless kitchen, on time"):
    return await client.post(
        "/reviews",
        headers=auth_headers(user),
        json={"booking_id": str(booking_id), "rating": rating, "comment": comment},
    )


@pytest.mark.asyncio
async def test_create_review_success(
    client: AsyncClient, db: AsyncSession, client_user: User, provider: User, service: Service, slots
):
    """Client can review a COMPLETED booking."""
    booking = await _completed(db, client_user, provider, service, slots[:1])

    response = await _review(client, client_user, booking.id)

    assert response.status_code == 201
    data = response.json()
    assert data["rating"] == 5
    assert data["provider_id"] == str(provider.id)
    assert data["client_id"] == str(client_user.id)


@pytest.mark.asyncio
async def test_resolved_booking_can_be_reviewed(
    client, db, client_user, provider, admin_user, service, slots
):
    booking = await dispute(db, client_user, provider, service, slots[:1])
    await booking_service.resolve_dispute(
        db, booking.id, admin_user, "Half the rooms were cleaned properly",
        DisputeOutcome.CLIENT, refund_percentage=50,
    )

    response = await _review(client, client_user, booking.id, rating=2)
    assert response.status_code == 201


@pytest.mark.asyncio
async def test_unfinished_booking_cannot_be_reviewed(client, db, client_user, service, slots):
    """Pending bookings are refused with the current status."""
    booking = await book(db, client_user, service, slots[:1])

    response = await _review(client, client_user, booking.id)

    assert response.status_code == 409
    assert response.json()["current_status"] == "pending"


@pytest.mark.asyncio
async def test_disputed_booking_cannot_be_reviewed(client, db, client_user, provider, service, slots):
    booking = await dispute(db, client_user, provider, service, slots[:1])
    response = await _review(client, client_user, booking.id)
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_duplicate_review_rejected(client, db, client_user, provider, service, slots):
    """Second review for the same booking is refused."""
    booking = await _completed(db, client_user, provider, service, slots[:1])
    first = await _review(client, client_user, booking.id)
    assert first.status_code == 201

    second = await _review(client, client_user, booking.id, rating=1, comment="Changed my mind")
    assert second.status_code == 409
    assert second.json()["code"] == "conflict"


@pytest.mark.asyncio
async def test_only_the_bookings_client_can_review(
    client, db, client_user, other_client, provider, service, slots
):
    booking = await _completed(db, client_user, provider, service, slots[:1])

    as_stranger = await _review(client, other_client, booking.id)
    as_provider = await _review(client, provider, booking.id)

    assert as_stranger.status_code == 403
    assert as_provider.status_code == 403


@pytest.mark.asyncio
async def test_rating_out_of_range_rejected(client, db, client_user, provider, service, slots):
    booking = await _completed(db, client_user, provider, service, slots[:1])
    response = await _review(client, client_user, booking.id, rating=6)
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_overdue_booking_is_reviewable(client, db, client_user, provider, service, slots):
    """A booking past its confirmation window counts as completed."""
    booking = await report_work(db, client_user, provider, service, slots[:1])
    booking.confirmation_deadline = utcnow() - timedelta(minutes=1)
    await db.commit()

    response = await _review(client, client_user, booking.id)
    assert response.status_code == 201


# ── Eligibility ───────────────────────────────────────────────

@pytest.mark.asyncio
async def test_can_review_reports_reasons(client, db, client_user, provider, service, slots):
    booking = await report_work(db, client_user, provider, service, slots[:1])
    url = f"/reviews/can-review/{booking.id}"

    waiting = (await client.get(url, headers=auth_headers(client_user))).json()
    assert waiting == {
        "can_review": False,
        "reason": "Booking must be completed before reviewing",
        "review_id": None,
    }

    await booking_service.confirm_booking(db, booking.id, client_user, confirmed=True)
    ready = (await client.get(url, headers=auth_headers(client_user))).json()
    assert ready["can_review"] is True

    created = (await _review(client, client_user, booking.id)).json()
    done = (await client.get(url, headers=auth_headers(client_user))).json()
    assert done["can_review"] is False
    assert done["review_id"] == created["id"]

    as_provider = (await client.get(url, headers=auth_headers(provider))).json()
    assert as_provider["can_review"] is False


@pytest.mark.asyncio
async def test_can_review_refuses_outsiders(client, db, client_user, other_client, provider, service, slots):
    booking = await _completed(db, client_user, provider, service, slots[:1])
    response = await client.get(
        f"/reviews/can-review/{booking.id}", headers=auth_headers(other_client)
    )
    assert response.status_code == 403


# ── Provider listing ──────────────────────────────────────────

@pytest.mark.asyncio
async def test_provider_listing_with_stats(
    client, db, client_user, other_client, provider, service, slots
):
    """Public endpoint; no auth needed."""
    first = await _completed(db, client_user, provider, service, slots[:1])
    second = await _completed(db, other_client, provider, service, slots[2:3])
    await _review(client, client_user, first.id, rating=5)
    await _review(client, other_client, second.id, rating=4)

    response = await client.get(f"/reviews/provider/{provider.id}")

    assert response.status_code == 200
    data = response.json()
    assert len(data["reviews"]) == 2
    assert data["stats"]["total_reviews"] == 2
    assert data["stats"]["average_rating"] == 4.5
    assert data["stats"]["distribution"] == {"5": 1, "4": 1, "3": 0, "2": 0, "1": 0}


@pytest.mark.asyncio
async def test_provider_with_no_reviews(client, provider):
    data = (await client.get(f"/reviews/provider/{provider.id}")).json()
    assert data["reviews"] == []
    assert data["stats"]["total_reviews"] == 0
    assert data["stats"]["average_rating"] == 0.0


# ── Moderation ────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_admin_hides_review(client, db, client_user, provider, admin_user, service, slots):
    booking = await _completed(db, client_user, provider, service, slots[:1])
    review = (await _review(client, client_user, booking.id)).json()

    response = await client.delete(f"/reviews/{review['id']}", headers=auth_headers(admin_user))

    assert response.status_code == 200
    listing = (await client.get(f"/reviews/provider/{provider.id}")).json()
    assert listing["reviews"] == []
    audit = (
        await db.execute(select(AdminAuditLog).where(AdminAuditLog.action == "HIDE_REVIEW"))
    ).scalar_one()
    assert audit.entity_id == review["id"]


@pytest.mark.asyncio
async def test_client_cannot_hide_review(client, db, client_user, provider, service, slots):
    booking = await _completed(db, client_user, provider, service, slots[:1])
    review = (await _review(client, client_user, booking.id)).json()

    response = await client.delete(f"/reviews/{review['id']}", headers=auth_headers(client_user))
    assert response.status_code == 403
