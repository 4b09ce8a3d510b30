"""
services/wallet/payouts.py
Provider withdrawals against the available balance.

Requesting a payout posts the debit straight away, so the money cannot
be requested twice. Rejection, failure and cancellation post the
matching reversal. Completion is only a status change: the debit is
already on the ledger and bank settlement happens outside SlotBook.
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from config.database import utcnow
from config.settings import settings
from services.wallet import ledger
from shared.exceptions import AuthorizationError, NotFoundError, StateError, ValidationError
from shared.models.models import BalanceType, Payout, PayoutStatus, TransactionType, User, UserRole
from shared.utils.pricing import quantize

logger = logging.getLogger(__name__)

OPEN_STATUSES = (PayoutStatus.PENDING, PayoutStatus.APPROVED, PayoutStatus.PROCESSING)

# Admin moves. Cancellation is the provider's own move from pending.
TRANSITIONS = {
    PayoutStatus.PENDING: {PayoutStatus.APPROVED, PayoutStatus.REJECTED},
    PayoutStatus.APPROVED: {PayoutStatus.PROCESSING, PayoutStatus.REJECTED},
    PayoutStatus.PROCESSING: {PayoutStatus.COMPLETED, PayoutStatus.FAILED},
}

REVERSING = {PayoutStatus.REJECTED, PayoutStatus.FAILED, PayoutStatus.CANCELLED}


def payout_reference(payout_id: uuid.UUID) -> str:
    return f"payout:{payout_id}"


def reversal_reference(payout_id: uuid.UUID) -> str:
    return f"payout:{payout_id}:reversal"


async def get_payout(db: AsyncSession, payout_id: uuid.UUID) -> Payout:
    result = await db.execute(
        select(Payout).where(Payout.id == payout_id).execution_options(populate_existing=True)
    )
    payout = result.scalar_one_or_none()
    if payout is None:
        raise NotFoundError("Payout not found")
    return payout


async def get_visible_payout(db: AsyncSession, payout_id: uuid.UUID, user: User) -> Payout:
    payout = await get_payout(db, payout_id)
    if user.role != UserRole.ADMIN and payout.provider_id != user.id:
        raise AuthorizationError("Not authorized to access this payout")
    return payout


async def list_payouts(
    db: AsyncSession,
    provider_id: Optional[uuid.UUID] = None,
    status: Optional[PayoutStatus] = None,
    page: int = 1,
    page_size: int = 20,
) -> Tuple[List[Payout], int]:
    """Newest first. Returns (page items, total)."""
    query = select(Payout)
    if provider_id is not None:
        query = query.where(Payout.provider_id == provider_id)
    if status is not None:
        query = query.where(Payout.status == status)

    total = await db.scalar(select(func.count()).select_from(query.subquery())) or 0
    result = await db.execute(
        query.order_by(Payout.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return list(result.scalars()), total


# ── Request ───────────────────────────────────────────────────

async def request_payout(
    db: AsyncSession,
    provider_id: uuid.UUID,
    amount: Decimal,
    payout_method: str,
    payout_details: Optional[dict] = None,
) -> Payout:
    """
    Create a pending payout and debit the available balance in one
    transaction. A short balance raises InsufficientBalance and nothing
    is written.
    """
    amount = quantize(amount)
    if amount <= 0:
        raise ValidationError("Payout amount must be positive")
    if amount < settings.MINIMUM_PAYOUT_AMOUNT:
        raise ValidationError(
            f"Minimum payout amount is {settings.MINIMUM_PAYOUT_AMOUNT}",
            minimum=str(settings.MINIMUM_PAYOUT_AMOUNT),
        )

    open_count = await db.scalar(
        select(func.count(Payout.id)).where(
            Payout.provider_id == provider_id, Payout.status.in_(OPEN_STATUSES)
        )
    )
    if open_count >= settings.MAX_OPEN_PAYOUTS:
        raise ValidationError(
            "Too many payout requests in progress. Wait for them to be processed"
        )

    wallet = await ledger.get_or_create_wallet(db, provider_id)
    payout = Payout(
        id=uuid.uuid4(),
        provider_id=provider_id,
        wallet_id=wallet.id,
        amount=amount,
        payout_method=payout_method,
        payout_details=payout_details or {},
        status=PayoutStatus.PENDING,
    )
    db.add(payout)
    await db.flush()

    try:
        await ledger.post_entry(
            db, provider_id, TransactionType.PAYOUT, BalanceType.AVAILABLE,
            -amount, payout_reference(payout.id), payout_id=payout.id,
            description=f"Payout request of {amount} via {payout_method}",
            allow_overdraft=False,
        )
    except ValidationError:
        await db.rollback()
        raise

    await db.commit()
    logger.info(f"Provider {provider_id} requested payout {payout.id} of {amount}")
    return payout


# ── Status changes ────────────────────────────────────────────

async def _write_status(db: AsyncSession, payout: Payout, to_status: PayoutStatus, **changes) -> None:
    """Flush pinned to the version read; a concurrent change raises StateError."""
    payout_id = payout.id
    payout.status = to_status
    for field, value in changes.items():
        setattr(payout, field, value)
    try:
        await db.flush()
    except StaleDataError:
        await db.rollback()
        current = await get_payout(db, payout_id)
        raise StateError(
            f"Payout was changed by someone else and is now '{current.status.value}'",
            current_status=current.status.value,
        )


async def _reverse(db: AsyncSession, payout: Payout, why: str) -> None:
    await ledger.post_entry(
        db, payout.provider_id, TransactionType.PAYOUT_REVERSAL, BalanceType.AVAILABLE,
        payout.amount, reversal_reference(payout.id), payout_id=payout.id,
        description=f"Payout {why}: {payout.amount} returned to available",
    )


async def update_payout_status(
    db: AsyncSession,
    payout_id: uuid.UUID,
    to_status: PayoutStatus,
    admin_notes: Optional[str] = None,
    rejection_reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Payout:
    """Admin moves a payout along. Caller logs and commits."""
    now = now or utcnow()
    payout = await get_payout(db, payout_id)
    current = payout.status
    allowed = TRANSITIONS.get(current, set())
    if to_status not in allowed:
        raise StateError(
            f"Cannot move a payout from '{current.value}' to '{to_status.value}'",
            current_status=current.value,
        )

    changes = {}
    if admin_notes is not None:
        changes["admin_notes"] = admin_notes
    if to_status == PayoutStatus.REJECTED:
        changes.update(rejection_reason=rejection_reason or "Rejected by admin", processed_at=now)
    elif to_status == PayoutStatus.APPROVED:
        changes["processed_at"] = now
    elif to_status == PayoutStatus.COMPLETED:
        changes["completed_at"] = now

    await _write_status(db, payout, to_status, **changes)
    if to_status in REVERSING:
        await _reverse(db, payout, to_status.value)

    logger.info(f"Payout {payout_id}: {current.value} -> {to_status.value}")
    return payout


async def cancel_payout(db: AsyncSession, payout_id: uuid.UUID, user: User) -> Payout:
    """Provider withdraws a request that no admin has looked at yet."""
    payout = await get_visible_payout(db, payout_id, user)
    if payout.status != PayoutStatus.PENDING:
        raise StateError(
            "Only pending payout requests can be cancelled",
            current_status=payout.status.value,
        )
    await _write_status(
        db, payout, PayoutStatus.CANCELLED, rejection_reason="Cancelled by provider"
    )
    await _reverse(db, payout, "cancelled")
    await db.commit()
    logger.info(f"Payout {payout_id} cancelled by {user.id}")
    return payout
