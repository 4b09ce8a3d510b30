"""
services/admin/router.py
Admin-only endpoints: dispute queue, booking oversight, hold cleanup,
wallet reconciliation and manual adjustments.

ALL mutations are logged to AdminAuditLog before returning.
"""

import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from services.availability.holds import sweep_expired_holds
from services.booking import service as booking_service
from services.booking.router import to_response
from services.wallet import ledger, payouts
from shared.middleware.auth import require_admin
from shared.models.models import (
    AdminAuditLog,
    BalanceType,
    Booking,
    BookingStatus,
    PayoutStatus,
    User,
)
from shared.schemas.schemas import (
    AdminAuditLogResponse,
    BookingAuditLogResponse,
    HoldSweepResponse,
    PaginatedResponse,
    PayoutResponse,
    PayoutStatusUpdateRequest,
    WalletAdjustRequest,
    WalletReconciliationResponse,
    WalletTransactionResponse,
    booking_response_adapter,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


# ── Helpers ───────────────────────────────────────────────────

def _log(
    db: AsyncSession,
    admin: User,
    action: str,
    entity_type: str,
    entity_id: str,
    payload: Optional[dict] = None,
    request: Optional[Request] = None,
) -> None:
    """Append an immutable record to AdminAuditLog."""
    db.add(
        AdminAuditLog(
            admin_id=admin.id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            payload=payload or {},
            ip_address=request.client.host if request and request.client else None,
        )
    )


async def _booking_page(
    db: AsyncSession, query, page: int, page_size: int
) -> PaginatedResponse:
    total = await db.scalar(select(func.count()).select_from(query.subquery())) or 0
    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))
    return PaginatedResponse(
        items=[
            booking_response_adapter.dump_python(to_response(b), mode="json")
            for b in result.scalars()
        ],
        total=total,
        page=page,
        page_size=page_size,
        pages=-(-total // page_size),
    )


# ── Bookings & Disputes ───────────────────────────────────────

@router.get("/disputes", response_model=PaginatedResponse)
async def get_open_disputes(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Disputed bookings, oldest dispute first (FIFO queue)."""
    query = (
        select(Booking)
        .where(Booking.status == BookingStatus.DISPUTED)
        .order_by(Booking.disputed_at.asc())
    )
    return await _booking_page(db, query, page, page_size)


@router.get("/bookings", response_model=PaginatedResponse)
async def list_all_bookings(
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    provider_id: Optional[UUID] = Query(None),
    client_id: Optional[UUID] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    query = select(Booking).order_by(Booking.created_at.desc())
    if status_filter:
        query = query.where(Booking.status == status_filter)
    if provider_id:
        query = query.where(Booking.provider_id == provider_id)
    if client_id:
        query = query.where(Booking.client_id == client_id)
    return await _booking_page(db, query, page, page_size)


@router.get("/bookings/{booking_id}/audit-log", response_model=List[BookingAuditLogResponse])
async def get_booking_audit_log(
    booking_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Full status history of a booking, oldest first."""
    return await booking_service.list_audit_log(db, booking_id)


# ── Holds ─────────────────────────────────────────────────────

@router.post("/holds/cleanup", response_model=HoldSweepResponse)
async def cleanup_expired_holds(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    request: Request = None,
):
    """Run the expired-hold sweep now instead of waiting for the beat schedule."""
    outcome = await sweep_expired_holds(db)
    if outcome.released_slots:
        await RedisCache(redis).delete_pattern("calendar:*")
    _log(db, current_user, "CLEANUP_HOLDS", "SlotHold", None,
         {"released_slots": outcome.released_slots, "deleted_holds": outcome.deleted_holds},
         request)
    await db.commit()
    return HoldSweepResponse(
        released_slots=outcome.released_slots, deleted_holds=outcome.deleted_holds
    )


# ── Wallets ───────────────────────────────────────────────────

@router.get("/wallets/{provider_id}/reconcile", response_model=WalletReconciliationResponse)
async def reconcile_wallet(
    provider_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Stored balances against the sum of ledger entries."""
    report = await ledger.reconcile(db, provider_id)
    if not report["balanced"]:
        logger.warning(f"Wallet for provider {provider_id} is out of balance: {report}")
    return report


@router.post("/wallets/{provider_id}/adjust", response_model=WalletTransactionResponse)
async def adjust_wallet(
    provider_id: UUID,
    data: WalletAdjustRequest,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    request: Request = None,
):
    entry = await ledger.adjust(
        db, provider_id, data.amount, BalanceType(data.balance_type), data.reason, current_user.id
    )
    _log(db, current_user, "ADJUST_WALLET", "Wallet", str(provider_id),
         {"amount": str(data.amount), "balance_type": data.balance_type, "reason": data.reason},
         request)
    await db.commit()
    return entry


# ── Payouts ───────────────────────────────────────────────────

@router.get("/payouts", response_model=PaginatedResponse)
async def list_all_payouts(
    status_filter: Optional[PayoutStatus] = Query(None, alias="status"),
    provider_id: Optional[UUID] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    items, total = await payouts.list_payouts(db, provider_id, status_filter, page, page_size)
    return PaginatedResponse(
        items=[PayoutResponse.model_validate(p).model_dump(mode="json") for p in items],
        total=total,
        page=page,
        page_size=page_size,
        pages=-(-total // page_size),
    )


@router.put("/payouts/{payout_id}", response_model=PayoutResponse)
async def update_payout(
    payout_id: UUID,
    data: PayoutStatusUpdateRequest,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    request: Request = None,
):
    """
    Move a payout along pending → approved → processing → completed.
    Rejecting or failing it returns the amount to the provider's
    available balance.
    """
    payout = await payouts.update_payout_status(
        db, payout_id, PayoutStatus(data.status), data.admin_notes, data.rejection_reason
    )
    _log(db, current_user, "UPDATE_PAYOUT", "Payout", str(payout_id),
         {"status": payout.status.value, "rejection_reason": data.rejection_reason},
         request)
    await db.commit()
    return payout


# ── Audit Log ─────────────────────────────────────────────────

@router.get("/audit-logs", response_model=List[AdminAuditLogResponse])
async def get_audit_logs(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    action: Optional[str] = Query(None),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Immutable admin action log, newest first."""
    query = select(AdminAuditLog).order_by(AdminAuditLog.created_at.desc())
    if action:
        query = query.where(AdminAuditLog.action == action)
    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))
    return list(result.scalars())
