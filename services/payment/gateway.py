"""
services/payment/gateway.py
Thin Razorpay boundary: order creation and refunds behind the
'razorpay' circuit breaker, with retries on transient gateway errors.
"""

import logging
import uuid
from decimal import Decimal
from typing import Optional

import razorpay
from razorpay.errors import GatewayError, ServerError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.database import utcnow
from config.settings import settings
from shared.models.models import Booking, Payment, PaymentStatus
from shared.utils.pricing import quantize
from shared.utils.resilience import circuit_breaker_manager

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (ServerError, GatewayError, ConnectionError)


def to_paise(amount: Decimal) -> int:
    """Razorpay amounts are integers in the smallest currency unit."""
    return int((quantize(amount) * 100).to_integral_value())


class PaymentGateway:
    def __init__(self, client: Optional[razorpay.Client] = None):
        self.client = client or razorpay.Client(
            auth=(settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET)
        )
        self.breaker = circuit_breaker_manager.get_breaker("razorpay")

    @retry(
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=4),
        reraise=True,
    )
    def _create_order(self, payload: dict) -> dict:
        return self.breaker.call(self.client.order.create, payload)

    async def create_order(self, booking: Booking) -> dict:
        payload = {
            "amount": to_paise(booking.total_price),
            "currency": settings.PAYMENT_CURRENCY,
            "receipt": str(booking.id),
            "notes": {
                "booking_number": booking.booking_number,
                "client_id": str(booking.client_id),
            },
        }
        order = await run_in_threadpool(self._create_order, payload)
        logger.info(f"Razorpay order {order['id']} created for booking {booking.booking_number}")
        return order

    def refund(self, razorpay_payment_id: str, amount: Decimal) -> dict:
        return self.breaker.call(
            self.client.payment.refund, razorpay_payment_id, {"amount": to_paise(amount)}
        )


def get_payment_gateway() -> PaymentGateway:
    """FastAPI dependency."""
    return PaymentGateway()


async def issue_refund(
    db: AsyncSession,
    payment_id: uuid.UUID,
    amount: Decimal,
    gateway: Optional[PaymentGateway] = None,
) -> Optional[Payment]:
    """
    Refund `amount` of a captured payment through the processor.
    Already refunded or never captured payments are skipped.
    """
    result = await db.execute(select(Payment).where(Payment.id == payment_id))
    payment = result.scalar_one_or_none()
    if payment is None:
        logger.error(f"Refund requested for unknown payment {payment_id}")
        return None
    if payment.status != PaymentStatus.CAPTURED or not payment.razorpay_payment_id:
        logger.info(f"Payment {payment_id} is {payment.status.value}; refund skipped")
        return None

    amount = min(quantize(amount), quantize(payment.amount))
    gateway = gateway or PaymentGateway()
    refund = await run_in_threadpool(gateway.refund, payment.razorpay_payment_id, amount)

    payment.refund_id = refund.get("id")
    payment.refund_amount = amount
    payment.refunded_at = utcnow()
    payment.status = (
        PaymentStatus.REFUNDED if amount >= quantize(payment.amount)
        else PaymentStatus.PARTIALLY_REFUNDED
    )
    await db.commit()
    logger.info(f"Refund {payment.refund_id} of {amount} issued for payment {payment_id}")
    return payment
