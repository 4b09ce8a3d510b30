"""
services/notification/service.py
In-app notifications for booking lifecycle events. Rows are written in
the caller's transaction; delivery channels beyond the inbox are out of
scope.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import Booking, Notification, NotificationType

logger = logging.getLogger(__name__)


# ── Templates ─────────────────────────────────────────────────

TEMPLATES = {
    NotificationType.BOOKING_REQUESTED: {
        "title": "New booking",
        "body": "New booking #{booking_number} for {start}.",
    },
    NotificationType.BOOKING_ACCEPTED: {
        "title": "Booking accepted",
        "body": "Your booking #{booking_number} for {start} has been accepted.",
    },
    NotificationType.BOOKING_REJECTED: {
        "title": "Booking declined",
        "body": "Booking #{booking_number} was declined by the provider.",
    },
    NotificationType.BOOKING_CANCELLED: {
        "title": "Booking cancelled",
        "body": "Booking #{booking_number} for {start} has been cancelled.",
    },
    NotificationType.BOOKING_RESCHEDULED: {
        "title": "Booking rescheduled",
        "body": "Booking #{booking_number} has moved to {start}.",
    },
    NotificationType.WORK_COMPLETED: {
        "title": "Please confirm completion",
        "body": (
            "The provider marked booking #{booking_number} as done. "
            "Confirm or raise a dispute before {deadline}."
        ),
    },
    NotificationType.BOOKING_COMPLETED: {
        "title": "Booking completed",
        "body": "Booking #{booking_number} is complete.",
    },
    NotificationType.BOOKING_DISPUTED: {
        "title": "Booking disputed",
        "body": "The client disputed booking #{booking_number}. An admin will review it.",
    },
    NotificationType.DISPUTE_RESOLVED: {
        "title": "Dispute resolved",
        "body": "The dispute on booking #{booking_number} was resolved in favour of the {outcome}.",
    },
    NotificationType.PAYMENT_SUCCESS: {
        "title": "Payment successful",
        "body": "Payment of {amount} received for booking #{booking_number}.",
    },
    NotificationType.PAYMENT_FAILED: {
        "title": "Payment failed",
        "body": "Payment for booking #{booking_number} failed and the booking was cancelled.",
    },
}


def _template_vars(booking: Booking, extra: Optional[dict]) -> dict:
    deadline = booking.confirmation_deadline
    outcome = booking.resolved_in_favor_of
    return {
        "booking_number": booking.booking_number,
        "start": booking.start.strftime("%d %b %Y %H:%M UTC"),
        "deadline": deadline.strftime("%d %b %Y %H:%M UTC") if deadline else "",
        "outcome": outcome.value if outcome else "",
        "amount": booking.total_price,
        **(extra or {}),
    }


def notify(
    db: AsyncSession,
    user_id: uuid.UUID,
    notification_type: NotificationType,
    booking: Booking,
    extra: Optional[dict] = None,
) -> Notification:
    """Queue an in-app notification on the session. Flushed with the transition."""
    template = TEMPLATES[notification_type]
    vars_ = _template_vars(booking, extra)

    notif = Notification(
        user_id=user_id,
        booking_id=booking.id,
        type=notification_type,
        title=template["title"].format(**vars_),
        body=template["body"].format(**vars_),
        data={"booking_id": str(booking.id), "status": booking.status.value},
    )
    db.add(notif)
    logger.debug(f"Notification {notification_type.value} queued for user {user_id}")
    return notif
