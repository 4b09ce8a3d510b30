"""
services/booking/router.py
Booking lifecycle endpoints. The state machine itself lives in
services/booking/service.py; this layer parses requests, shapes the
status-tagged responses and keeps the calendar cache fresh.
"""

import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from services.booking import service
from services.booking.storage import EvidenceStorage, get_evidence_storage, read_evidence_files
from shared.middleware.auth import get_current_user, require_admin, require_client
from shared.models.models import (
    Booking,
    BookingMode,
    BookingStatus,
    DisputeOutcome,
    EvidenceType,
    PricingType,
    User,
)
from shared.schemas.schemas import (
    BookingConfirmRequest,
    BookingCreateRequest,
    BookingResponse,
    BookingStatusUpdateRequest,
    DisputeResolveRequest,
    EvidenceResponse,
    MessageResponse,
    PaginatedResponse,
    RescheduleRequest,
    booking_response_adapter,
)
from tasks.payment_tasks import process_refund

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["Bookings"])

_WITH_EVIDENCE = {
    BookingStatus.AWAITING_CONFIRMATION,
    BookingStatus.COMPLETED,
    BookingStatus.DISPUTED,
    BookingStatus.RESOLVED,
}


def to_response(booking: Booking) -> BookingResponse:
    data = {c.key: getattr(booking, c.key) for c in Booking.__table__.columns}
    data["status"] = booking.status.value
    if booking.status in _WITH_EVIDENCE:
        data["evidence"] = [EvidenceResponse.model_validate(e) for e in booking.evidence]
    return booking_response_adapter.validate_python(data)


async def _invalidate(redis, booking: Booking) -> None:
    await RedisCache(redis).invalidate_calendar(str(booking.provider_id))


# ── Create / Read ─────────────────────────────────────────────

@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreateRequest,
    current_user: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Convert the caller's active hold into a booking.
    The hold must cover exactly `slot_ids`; instant mode skips provider review.
    """
    booking = await service.create_booking(
        db,
        current_user,
        provider_id=data.provider_id,
        service_id=data.service_id,
        slot_ids=data.slot_ids,
        booking_mode=BookingMode(data.booking_mode),
        pricing_type=PricingType(data.pricing_type),
        notes=data.notes,
    )
    await _invalidate(redis, booking)
    return to_response(booking)


@router.get("", response_model=PaginatedResponse)
async def list_my_bookings(
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Bookings where the caller is client or provider."""
    bookings, total = await service.list_bookings(db, current_user, status_filter, page, page_size)
    return PaginatedResponse(
        items=[booking_response_adapter.dump_python(to_response(b), mode="json") for b in bookings],
        total=total,
        page=page,
        page_size=page_size,
        pages=(total + page_size - 1) // page_size,
    )


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    booking = await service.get_visible_booking(db, booking_id, current_user)
    return to_response(booking)


@router.delete("/{booking_id}", response_model=MessageResponse)
async def delete_booking(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Hard delete a pending booking. Its slots go back to the calendar."""
    booking = await service.get_visible_booking(db, booking_id, current_user)
    provider_id = booking.provider_id
    await service.delete_booking(db, booking_id, current_user)
    await RedisCache(redis).invalidate_calendar(str(provider_id))
    return MessageResponse(message="Booking deleted")


# ── Provider decision / cancellation ──────────────────────────

@router.put("/{booking_id}", response_model=BookingResponse)
async def update_booking_status(
    booking_id: UUID,
    data: BookingStatusUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    if data.status == "accepted":
        booking = await service.accept_booking(db, booking_id, current_user)
        return to_response(booking)

    if data.status == "rejected":
        booking = await service.reject_booking(db, booking_id, current_user, data.reason)
    else:
        booking = await service.cancel_booking(db, booking_id, current_user, data.reason)
    await _invalidate(redis, booking)
    return to_response(booking)


# ── Completion & evidence ─────────────────────────────────────

@router.post("/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(
    booking_id: UUID,
    files: List[UploadFile] = File(...),
    notes: Optional[str] = Form(None),
    evidence_type: EvidenceType = Form(EvidenceType.AFTER),
    caption: Optional[str] = Form(None),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    storage: EvidenceStorage = Depends(get_evidence_storage),
):
    """Provider marks the work done, with at least one photo."""
    evidence = await read_evidence_files(files)
    booking = await service.complete_booking(
        db, booking_id, current_user, evidence, storage,
        notes=notes, evidence_type=evidence_type, caption=caption,
    )
    return to_response(booking)


@router.get("/{booking_id}/evidence", response_model=List[EvidenceResponse])
async def list_evidence(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    booking = await service.get_visible_booking(db, booking_id, current_user)
    return booking.evidence


@router.post(
    "/{booking_id}/evidence",
    response_model=List[EvidenceResponse],
    status_code=status.HTTP_201_CREATED,
)
async def add_evidence(
    booking_id: UUID,
    files: List[UploadFile] = File(...),
    evidence_type: EvidenceType = Form(EvidenceType.OTHER),
    caption: Optional[str] = Form(None),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    storage: EvidenceStorage = Depends(get_evidence_storage),
):
    evidence = await read_evidence_files(files)
    return await service.add_evidence(
        db, booking_id, current_user, evidence, storage,
        evidence_type=evidence_type, caption=caption,
    )


@router.put("/{booking_id}/confirm", response_model=BookingResponse)
async def confirm_booking(
    booking_id: UUID,
    data: BookingConfirmRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Client confirms the work, or disputes it with a reason."""
    booking = await service.confirm_booking(
        db, booking_id, current_user, data.confirmed, data.dispute_reason
    )
    return to_response(booking)


@router.put("/{booking_id}/resolve-dispute", response_model=BookingResponse)
async def resolve_dispute(
    booking_id: UUID,
    data: DisputeResolveRequest,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    booking, refund_payment_id = await service.resolve_dispute(
        db,
        booking_id,
        current_user,
        data.resolution,
        DisputeOutcome(data.resolved_in_favor_of),
        data.refund_percentage,
    )
    if refund_payment_id is not None:
        process_refund.delay(str(refund_payment_id), str(booking.client_refund_amount))
        logger.info(f"Refund queued for booking {booking.booking_number}")
    return to_response(booking)


# ── Reschedule ────────────────────────────────────────────────

@router.put("/{booking_id}/reschedule", response_model=BookingResponse)
async def reschedule_booking(
    booking_id: UUID,
    data: RescheduleRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    booking = await service.reschedule_booking(
        db, booking_id, current_user, data.start_date, data.end_date, data.reason
    )
    await _invalidate(redis, booking)
    return to_response(booking)
