"""
services/wallet/router.py
Provider wallet: balances, ledger history and payout requests.
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.wallet import ledger, payouts
from shared.middleware.auth import get_current_user, require_provider
from shared.models.models import PayoutStatus, User
from shared.schemas.schemas import (
    PaginatedResponse,
    PayoutRequest,
    PayoutResponse,
    WalletResponse,
    WalletTransactionResponse,
)

router = APIRouter(prefix="/wallet", tags=["Wallet"])


@router.get("/me", response_model=WalletResponse)
async def get_my_wallet(
    current_user: User = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
):
    wallet = await ledger.get_or_create_wallet(db, current_user.id)
    await db.commit()
    return wallet


@router.get("/me/transactions", response_model=List[WalletTransactionResponse])
async def get_my_transactions(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
):
    """Newest first."""
    return await ledger.list_transactions(db, current_user.id, page, page_size)


# ── Payouts ───────────────────────────────────────────────────

@router.post("/payouts", response_model=PayoutResponse, status_code=status.HTTP_201_CREATED)
async def request_payout(
    data: PayoutRequest,
    current_user: User = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
):
    """
    Withdraw from the available balance.
    - The amount is debited immediately and held against the request
    - Refused when the available balance is short
    - Pending balance is never withdrawable
    """
    return await payouts.request_payout(
        db, current_user.id, data.amount, data.payout_method, data.payout_details
    )


@router.get("/payouts", response_model=PaginatedResponse)
async def get_my_payouts(
    status_filter: Optional[PayoutStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
):
    items, total = await payouts.list_payouts(db, current_user.id, status_filter, page, page_size)
    return PaginatedResponse(
        items=[PayoutResponse.model_validate(p).model_dump(mode="json") for p in items],
        total=total,
        page=page,
        page_size=page_size,
        pages=-(-total // page_size),
    )


@router.get("/payouts/{payout_id}", response_model=PayoutResponse)
async def get_payout(
    payout_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """The owning provider or an admin."""
    return await payouts.get_visible_payout(db, payout_id, current_user)


@router.delete("/payouts/{payout_id}", response_model=PayoutResponse)
async def cancel_payout(
    payout_id: UUID,
    current_user: User = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
):
    """Withdraw a pending request; the amount returns to available."""
    return await payouts.cancel_payout(db, payout_id, current_user)
