"""
services/payment/router.py
Razorpay payment integration: order creation, checkout verification
and the processor webhook. Capture credits the provider's pending
balance through the ledger.
"""

import json
import logging
from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db, utcnow
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from services.booking import service as booking_service
from services.notification.service import notify
from services.payment.gateway import PaymentGateway, get_payment_gateway, to_paise
from services.wallet import ledger
from shared.exceptions import AuthorizationError, NotFoundError, StateError, ValidationError
from shared.middleware.auth import get_current_user
from shared.models.models import (
    Booking,
    BookingStatus,
    NotificationType,
    Payment,
    PaymentStatus,
    User,
)
from shared.schemas.schemas import (
    MessageResponse,
    PaymentInitiateRequest,
    PaymentInitiateResponse,
    PaymentResponse,
    PaymentVerifyRequest,
)
from shared.utils.security import verify_razorpay_signature, verify_razorpay_webhook_signature
from tasks.payment_tasks import process_refund

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])

PAYABLE_STATUSES = (BookingStatus.PENDING, BookingStatus.ACCEPTED)


async def _capture(
    db: AsyncSession,
    payment: Payment,
    booking: Booking,
    razorpay_payment_id: str,
    now: datetime,
    signature: str = None,
) -> bool:
    """Mark captured and credit the ledger. Returns False if already captured."""
    if payment.status == PaymentStatus.CAPTURED:
        return False

    payment.status = PaymentStatus.CAPTURED
    payment.razorpay_payment_id = razorpay_payment_id
    if signature:
        payment.razorpay_signature = signature
    payment.captured_at = now

    if booking.status in (BookingStatus.CANCELLED, BookingStatus.REJECTED):
        # Money arrived for a booking that no longer exists in practice
        logger.warning(
            f"Payment captured for {booking.status.value} booking {booking.booking_number}; refunding"
        )
        await db.commit()
        process_refund.delay(str(payment.id), str(payment.amount))
        return True

    await ledger.record_payment_received(db, booking, payment.id)
    notify(db, booking.client_id, NotificationType.PAYMENT_SUCCESS, booking)
    await db.commit()
    return True


# ── Initiate Payment ──────────────────────────────────────────

@router.post("/initiate", response_model=PaymentInitiateResponse)
async def initiate_payment(
    data: PaymentInitiateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """
    Create a Razorpay order for a pending or accepted booking.
    Client uses order_id + key_id to open Razorpay checkout.
    """
    booking = await booking_service.get_booking(db, data.booking_id)
    if booking.client_id != current_user.id:
        raise AuthorizationError("Only the client can pay for this booking")
    if booking.status not in PAYABLE_STATUSES:
        raise StateError(
            f"Cannot pay for a booking that is '{booking.status.value}'",
            current_status=booking.status.value,
        )

    result = await db.execute(select(Payment).where(Payment.booking_id == booking.id))
    payment = result.scalar_one_or_none()
    if payment and payment.status == PaymentStatus.CAPTURED:
        raise StateError("Payment already completed", current_status=booking.status.value)

    order = await gateway.create_order(booking)

    if payment:
        payment.razorpay_order_id = order["id"]
        payment.status = PaymentStatus.PENDING
    else:
        db.add(
            Payment(
                booking_id=booking.id,
                user_id=current_user.id,
                razorpay_order_id=order["id"],
                amount=booking.total_price,
                currency=settings.PAYMENT_CURRENCY,
                platform_fee=booking.platform_fee,
                status=PaymentStatus.PENDING,
            )
        )
    await db.commit()

    return PaymentInitiateResponse(
        razorpay_order_id=order["id"],
        razorpay_key_id=settings.RAZORPAY_KEY_ID,
        amount=to_paise(booking.total_price),
        currency=settings.PAYMENT_CURRENCY,
        booking_id=str(booking.id),
    )


# ── Verify Payment (called from client after checkout) ────────

@router.post("/verify", response_model=MessageResponse)
async def verify_payment(
    data: PaymentVerifyRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Verify the checkout signature and capture the payment."""
    if not verify_razorpay_signature(
        data.razorpay_order_id, data.razorpay_payment_id, data.razorpay_signature
    ):
        raise ValidationError("Invalid payment signature")

    result = await db.execute(
        select(Payment).where(
            Payment.razorpay_order_id == data.razorpay_order_id,
            Payment.booking_id == data.booking_id,
            Payment.user_id == current_user.id,
        )
    )
    payment = result.scalar_one_or_none()
    if not payment:
        raise NotFoundError("Payment record not found")

    booking = await booking_service.get_booking(db, payment.booking_id)
    captured = await _capture(
        db, payment, booking, data.razorpay_payment_id, utcnow(), data.razorpay_signature
    )
    if not captured:
        return MessageResponse(message="Payment already verified")
    return MessageResponse(message="Payment verified")


# ── Razorpay Webhook ──────────────────────────────────────────

@router.post("/webhook", include_in_schema=False)
async def razorpay_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Razorpay webhook handler. Validates HMAC signature.
    Handles: payment.captured, payment.failed, refund.processed.
    """
    body = await request.body()
    signature = request.headers.get("X-Razorpay-Signature", "")
    if not verify_razorpay_webhook_signature(body, signature):
        raise ValidationError("Invalid webhook signature")

    payload = json.loads(body)
    event = payload.get("event")
    entity = payload.get("payload", {}).get("payment", {}).get("entity", {})
    rzp_order_id = entity.get("order_id")
    if not rzp_order_id:
        return {"status": "ignored"}

    result = await db.execute(select(Payment).where(Payment.razorpay_order_id == rzp_order_id))
    payment = result.scalar_one_or_none()
    if not payment:
        logger.warning(f"Webhook {event} for unknown order {rzp_order_id}")
        return {"status": "not_found"}

    now = utcnow()
    booking = await booking_service.get_booking(db, payment.booking_id)

    if event == "payment.captured":
        await _capture(db, payment, booking, entity.get("id"), now)

    elif event == "payment.failed":
        if payment.status != PaymentStatus.CAPTURED:
            payment.status = PaymentStatus.FAILED
            provider_id = booking.provider_id
            if await booking_service.cancel_for_failed_payment(db, booking, now):
                await db.commit()
                await RedisCache(redis).invalidate_calendar(str(provider_id))

    elif event == "refund.processed":
        refund_entity = payload.get("payload", {}).get("refund", {}).get("entity", {})
        payment.refund_id = refund_entity.get("id")
        if refund_entity.get("amount") is not None:
            payment.refund_amount = Decimal(refund_entity["amount"]) / 100
        payment.refunded_at = now
        if payment.status == PaymentStatus.CAPTURED:
            payment.status = PaymentStatus.REFUNDED

    await db.commit()
    return {"status": "ok"}


# ── Read Endpoints ────────────────────────────────────────────

@router.get("/me/history", response_model=list[PaymentResponse])
async def my_payment_history(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get authenticated user's payment history."""
    result = await db.execute(
        select(Payment)
        .where(Payment.user_id == current_user.id)
        .order_by(Payment.created_at.desc())
        .limit(50)
    )
    return [PaymentResponse.model_validate(p) for p in result.scalars()]
