"""
services/wallet/ledger.py
Provider wallet bookkeeping. Consumes booking lifecycle events and
payment capture inside the caller's transaction; never drives a
booking transition itself.

Every movement is an immutable WalletTransaction keyed by a unique
reference_id, so replaying an event is a no-op.
"""

import logging
import uuid
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.exceptions import InsufficientBalance, NotFoundError
from shared.models.models import (
    BalanceType,
    Booking,
    BookingStatus,
    TransactionType,
    Wallet,
    WalletTransaction,
)
from shared.utils.pricing import quantize, split_refund

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


def payment_reference(booking_id: uuid.UUID) -> str:
    return f"{booking_id}:payment_received"


async def get_wallet(db: AsyncSession, provider_id: uuid.UUID) -> Optional[Wallet]:
    result = await db.execute(
        select(Wallet)
        .where(Wallet.provider_id == provider_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_or_create_wallet(db: AsyncSession, provider_id: uuid.UUID) -> Wallet:
    wallet = await get_wallet(db, provider_id)
    if wallet is None:
        wallet = Wallet(provider_id=provider_id, available_balance=ZERO, pending_balance=ZERO)
        db.add(wallet)
        await db.flush()
    return wallet


async def has_entry(db: AsyncSession, reference_id: str) -> bool:
    result = await db.execute(
        select(WalletTransaction.id).where(WalletTransaction.reference_id == reference_id)
    )
    return result.scalar_one_or_none() is not None


async def post_entry(
    db: AsyncSession,
    provider_id: uuid.UUID,
    tx_type: TransactionType,
    balance_type: BalanceType,
    amount: Decimal,
    reference_id: str,
    booking_id: Optional[uuid.UUID] = None,
    payment_id: Optional[uuid.UUID] = None,
    payout_id: Optional[uuid.UUID] = None,
    description: Optional[str] = None,
    allow_overdraft: bool = True,
) -> Optional[WalletTransaction]:
    """
    Append one signed entry and move the matching balance by the same
    amount. Returns None when reference_id was already posted.

    With allow_overdraft=False a debit that would take the balance below
    zero raises InsufficientBalance and nothing is written.
    """
    if await has_entry(db, reference_id):
        return None

    amount = quantize(amount)
    wallet = await get_or_create_wallet(db, provider_id)
    column = (
        Wallet.pending_balance if balance_type == BalanceType.PENDING else Wallet.available_balance
    )
    stmt = update(Wallet).where(Wallet.id == wallet.id)
    if not allow_overdraft:
        stmt = stmt.where(column + amount >= 0)
    result = await db.execute(
        stmt.values({column: column + amount})
        .returning(column)
        .execution_options(synchronize_session=False)
    )
    balance_after = result.scalar_one_or_none()
    if balance_after is None:
        current = await get_wallet(db, provider_id)
        held = (
            current.pending_balance
            if balance_type == BalanceType.PENDING
            else current.available_balance
        )
        raise InsufficientBalance(available=quantize(held), requested=-amount)
    balance_after = quantize(balance_after)

    entry = WalletTransaction(
        wallet_id=wallet.id,
        provider_id=provider_id,
        booking_id=booking_id,
        payment_id=payment_id,
        payout_id=payout_id,
        type=tx_type,
        balance_type=balance_type,
        amount=amount,
        balance_after=balance_after,
        reference_id=reference_id,
        description=description,
    )
    db.add(entry)
    await db.flush()
    logger.info(
        f"Ledger {tx_type.value} {amount} ({balance_type.value}) for provider {provider_id} "
        f"[{reference_id}] -> {balance_after}"
    )
    return entry


async def _release(db: AsyncSession, booking: Booking, amount: Decimal, reference: str) -> None:
    """Move amount from pending to available as a pair of entries."""
    if amount <= 0:
        return
    await post_entry(
        db, booking.provider_id, TransactionType.RELEASE_PENDING, BalanceType.PENDING,
        -amount, f"{booking.id}:{reference}:pending", booking_id=booking.id,
        description=f"Released from pending for booking {booking.booking_number}",
    )
    await post_entry(
        db, booking.provider_id, TransactionType.RELEASE_PENDING, BalanceType.AVAILABLE,
        amount, f"{booking.id}:{reference}:available", booking_id=booking.id,
        description=f"Available from booking {booking.booking_number}",
    )


# ── Event consumers ───────────────────────────────────────────

async def record_payment_received(
    db: AsyncSession,
    booking: Booking,
    payment_id: Optional[uuid.UUID] = None,
) -> Optional[WalletTransaction]:
    """Credit the provider's net to pending once per booking."""
    return await post_entry(
        db,
        booking.provider_id,
        TransactionType.PAYMENT_RECEIVED,
        BalanceType.PENDING,
        booking.service_fee,
        payment_reference(booking.id),
        booking_id=booking.id,
        payment_id=payment_id,
        description=f"Payment received for booking {booking.booking_number}",
    )


async def on_booking_event(db: AsyncSession, booking: Booking, event: BookingStatus) -> None:
    """Apply the ledger consequences of a booking entering `event`."""
    net = quantize(booking.service_fee)

    if event == BookingStatus.COMPLETED:
        await record_payment_received(db, booking)
        await _release(db, booking, net, "completed")

    elif event == BookingStatus.RESOLVED:
        await record_payment_received(db, booking)
        split = split_refund(booking.total_price, net, booking.refund_percentage or 0)
        refund = split["provider_refund_amount"]
        if refund > 0:
            await post_entry(
                db, booking.provider_id, TransactionType.REFUND, BalanceType.PENDING,
                -refund, f"{booking.id}:dispute_refund", booking_id=booking.id,
                description=(
                    f"Dispute refund ({booking.refund_percentage}%) "
                    f"for booking {booking.booking_number}"
                ),
            )
        await _release(db, booking, split["provider_release_amount"], "resolved")

    elif event in (BookingStatus.REJECTED, BookingStatus.CANCELLED):
        if await has_entry(db, payment_reference(booking.id)):
            await post_entry(
                db, booking.provider_id, TransactionType.REFUND, BalanceType.PENDING,
                -net, f"{booking.id}:refund", booking_id=booking.id,
                description=f"Refund for {event.value} booking {booking.booking_number}",
            )


# ── Admin ─────────────────────────────────────────────────────

async def adjust(
    db: AsyncSession,
    provider_id: uuid.UUID,
    amount: Decimal,
    balance_type: BalanceType,
    reason: str,
    admin_id: uuid.UUID,
) -> WalletTransaction:
    return await post_entry(
        db,
        provider_id,
        TransactionType.ADJUSTMENT,
        balance_type,
        amount,
        f"adjustment:{uuid.uuid4()}",
        description=f"{reason} (by admin {admin_id})",
    )


async def reconcile(db: AsyncSession, provider_id: uuid.UUID) -> dict:
    """Compare stored balances against the signed ledger sums."""
    wallet = await get_wallet(db, provider_id)
    if wallet is None:
        raise NotFoundError("Wallet not found")

    rows = (
        await db.execute(
            select(WalletTransaction.balance_type, func.sum(WalletTransaction.amount))
            .where(WalletTransaction.provider_id == provider_id)
            .group_by(WalletTransaction.balance_type)
        )
    ).all()
    sums = {balance_type: quantize(total or 0) for balance_type, total in rows}
    ledger_available = sums.get(BalanceType.AVAILABLE, ZERO)
    ledger_pending = sums.get(BalanceType.PENDING, ZERO)
    available = quantize(wallet.available_balance)
    pending = quantize(wallet.pending_balance)

    return {
        "provider_id": provider_id,
        "available_balance": available,
        "pending_balance": pending,
        "ledger_available": ledger_available,
        "ledger_pending": ledger_pending,
        "balanced": available == ledger_available and pending == ledger_pending,
    }


async def list_transactions(
    db: AsyncSession,
    provider_id: uuid.UUID,
    page: int = 1,
    page_size: int = 20,
) -> List[WalletTransaction]:
    result = await db.execute(
        select(WalletTransaction)
        .where(WalletTransaction.provider_id == provider_id)
        .order_by(WalletTransaction.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return list(result.scalars())
