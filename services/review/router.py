"""
services/review/router.py
Client ratings of finished bookings.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.booking import service as booking_service
from shared.exceptions import ConflictError, NotFoundError, StateError
from shared.middleware.auth import get_current_user, require_admin, require_client
from shared.models.models import AdminAuditLog, BookingStatus, Review, User
from shared.schemas.schemas import (
    MessageResponse,
    ProviderReviewsResponse,
    ReviewCreateRequest,
    ReviewEligibilityResponse,
    ReviewResponse,
    ReviewStats,
)

router = APIRouter(prefix="/reviews", tags=["Reviews"])

REVIEWABLE = (BookingStatus.COMPLETED, BookingStatus.RESOLVED)


async def _existing_review(db: AsyncSession, booking_id: UUID):
    result = await db.execute(select(Review).where(Review.booking_id == booking_id))
    return result.scalar_one_or_none()


@router.post("", response_model=ReviewResponse, status_code=status.HTTP_201_CREATED)
async def create_review(
    data: ReviewCreateRequest,
    current_user: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
):
    """
    Rate a finished booking.
    - Only the booking's client can review
    - Booking must be completed or resolved
    - One review per booking (unique constraint on booking_id)
    """
    client_id = current_user.id
    booking = await booking_service.get_visible_booking(db, data.booking_id, current_user)
    if booking.status not in REVIEWABLE:
        raise StateError(
            "Booking must be completed before reviewing",
            current_status=booking.status.value,
        )
    if await _existing_review(db, booking.id):
        raise ConflictError("You have already reviewed this booking")

    review = Review(
        booking_id=booking.id,
        client_id=client_id,
        provider_id=booking.provider_id,
        rating=data.rating,
        comment=data.comment,
    )
    db.add(review)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError("You have already reviewed this booking")
    return review


@router.get("/can-review/{booking_id}", response_model=ReviewEligibilityResponse)
async def can_review(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Whether the caller may review this booking now, and why not."""
    client_id = current_user.id
    booking = await booking_service.get_visible_booking(db, booking_id, current_user)
    if booking.client_id != client_id:
        return ReviewEligibilityResponse(can_review=False, reason="Only the client can leave a review")
    if booking.status not in REVIEWABLE:
        return ReviewEligibilityResponse(
            can_review=False, reason="Booking must be completed before reviewing"
        )
    existing = await _existing_review(db, booking.id)
    if existing:
        return ReviewEligibilityResponse(
            can_review=False, reason="You have already reviewed this booking", review_id=existing.id
        )
    return ReviewEligibilityResponse(can_review=True)


@router.get("/provider/{provider_id}", response_model=ProviderReviewsResponse)
async def get_provider_reviews(
    provider_id: UUID,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
):
    """Public: visible reviews of a provider, newest first, with rating stats."""
    visible = (Review.provider_id == provider_id, Review.is_visible.is_(True))
    result = await db.execute(
        select(Review)
        .where(*visible)
        .order_by(Review.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    counts = dict(
        (await db.execute(
            select(Review.rating, func.count(Review.id)).where(*visible).group_by(Review.rating)
        )).all()
    )
    total = sum(counts.values())
    average = sum(r * n for r, n in counts.items()) / total if total else 0.0

    return ProviderReviewsResponse(
        reviews=[ReviewResponse.model_validate(r) for r in result.scalars()],
        stats=ReviewStats(
            total_reviews=total,
            average_rating=round(average, 1),
            distribution={r: counts.get(r, 0) for r in range(5, 0, -1)},
        ),
    )


@router.delete("/{review_id}", response_model=MessageResponse)
async def hide_review(
    review_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    request: Request = None,
):
    """Admin: hide a review from the public listing without deleting it."""
    review = (await db.execute(select(Review).where(Review.id == review_id))).scalar_one_or_none()
    if not review:
        raise NotFoundError("Review not found")

    review.is_visible = False
    db.add(
        AdminAuditLog(
            admin_id=current_user.id,
            action="HIDE_REVIEW",
            entity_type="Review",
            entity_id=str(review_id),
            payload={"provider_id": str(review.provider_id), "rating": review.rating},
            ip_address=request.client.host if request and request.client else None,
        )
    )
    await db.commit()
    return MessageResponse(message="Review hidden successfully")
