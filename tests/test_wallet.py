"""
tests/test_wallet.py
Provider ledger: idempotent postings, balance movement on lifecycle
events and the provider-facing wallet endpoints.
"""

from decimal import Decimal

import pytest

from services.booking import service as booking_service
from services.wallet import ledger
from shared.models.models import BalanceType, BookingStatus, TransactionType
from tests.conftest import auth_headers, book, report_work


@pytest.mark.asyncio
async def test_post_entry_is_idempotent(db, provider):
    first = await ledger.post_entry(
        db, provider.id, TransactionType.ADJUSTMENT, BalanceType.AVAILABLE,
        Decimal("10.00"), "test:once",
    )
    second = await ledger.post_entry(
        db, provider.id, TransactionType.ADJUSTMENT, BalanceType.AVAILABLE,
        Decimal("10.00"), "test:once",
    )
    await db.commit()

    assert first is not None
    assert second is None
    wallet = await ledger.get_wallet(db, provider.id)
    assert Decimal(wallet.available_balance) == Decimal("10.00")


@pytest.mark.asyncio
async def test_payment_received_is_recorded_once(db, client_user, provider, service, slots):
    booking = await book(db, client_user, service, slots[:2])

    await ledger.record_payment_received(db, booking)
    await ledger.record_payment_received(db, booking)
    await db.commit()

    wallet = await ledger.get_wallet(db, provider.id)
    assert Decimal(wallet.pending_balance) == Decimal("200.00")


@pytest.mark.asyncio
async def test_completion_after_payment_moves_pending_to_available(db, client_user, provider, service, slots):
    booking = await report_work(db, client_user, provider, service, slots[:2])
    await ledger.record_payment_received(db, booking)
    await db.commit()

    await booking_service.confirm_booking(db, booking.id, client_user, confirmed=True)

    wallet = await ledger.get_wallet(db, provider.id)
    assert (Decimal(wallet.available_balance), Decimal(wallet.pending_balance)) == (
        Decimal("200.00"),
        Decimal("0.00"),
    )
    assert (await ledger.reconcile(db, provider.id))["balanced"] is True


@pytest.mark.asyncio
async def test_cancel_after_payment_reverses_pending(db, client_user, provider, service, slots):
    booking = await book(db, client_user, service, slots[:1])
    await ledger.record_payment_received(db, booking)
    await db.commit()

    cancelled = await booking_service.cancel_booking(db, booking.id, client_user)

    assert cancelled.status == BookingStatus.CANCELLED
    wallet = await ledger.get_wallet(db, provider.id)
    assert Decimal(wallet.pending_balance) == Decimal("0.00")


@pytest.mark.asyncio
async def test_wallet_endpoints(client, db, client_user, provider, service, slots):
    booking = await report_work(db, client_user, provider, service, slots[:1])
    await booking_service.confirm_booking(db, booking.id, client_user, confirmed=True)

    wallet = await client.get("/wallet/me", headers=auth_headers(provider))
    history = await client.get("/wallet/me/transactions", headers=auth_headers(provider))

    assert Decimal(wallet.json()["available_balance"]) == Decimal("100.00")
    assert {t["type"] for t in history.json()} == {"payment_received", "release_pending"}
    assert len(history.json()) == 3


@pytest.mark.asyncio
async def test_clients_have_no_wallet(client, client_user):
    response = await client.get("/wallet/me", headers=auth_headers(client_user))
    assert response.status_code == 403
