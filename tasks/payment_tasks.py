"""
tasks/payment_tasks.py
Celery tasks for payment lifecycle operations:
- Processor refunds queued by dispute resolution or late captures

Refunds skip payments that are no longer captured, so a retry is harmless.
"""

import asyncio
import logging
import uuid
from decimal import Decimal

from config.database import task_session
from services.payment.gateway import issue_refund
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


async def _refund(payment_id: str, amount: str):
    async with task_session() as db:
        return await issue_refund(db, uuid.UUID(payment_id), Decimal(amount))


@celery_app.task(bind=True, max_retries=5, default_retry_delay=60)
def process_refund(self, payment_id: str, amount: str):
    """
    Refund `amount` of a captured payment through Razorpay.
    Skips payments that are no longer captured, so retries are safe.
    """
    try:
        payment = asyncio.run(_refund(payment_id, amount))
    except Exception as e:
        logger.exception(f"process_refund failed for payment {payment_id}: {e}")
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))

    if payment is not None:
        logger.info(f"Refund processed for payment {payment_id}: {payment.refund_id}")
