"""
tests/test_holds.py
Hold Manager: exclusive claims, expiry, replacement, release and the
race between two clients for the same slots.
"""

import asyncio
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select

from config.database import utcnow
from services.availability import holds
from services.availability.slots import effective_status, is_hold_active
from shared.exceptions import SlotConflict
from shared.models.models import Slot, SlotHold, SlotStatus, User, UserRole
from tests.conftest import auth_headers, make_slots, future_day


async def _statuses(db, slot_ids) -> dict:
    result = await db.execute(
        select(Slot).where(Slot.id.in_(slot_ids)).execution_options(populate_existing=True)
    )
    return {s.id: s.status for s in result.scalars()}


async def _clients(db, count) -> list:
    users = [
        User(id=uuid.uuid4(), email=f"racer{n}.{uuid.uuid4().hex[:6]}@example.com",
             name=f"Racer {n}", role=UserRole.CLIENT, is_active=True)
        for n in range(count)
    ]
    db.add_all(users)
    await db.commit()
    return [u.id for u in users]


# ── API ───────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_hold_contiguous_slots(client, client_user, slots):
    ids = [str(s.id) for s in slots[:2]]
    response = await client.post(
        "/availability/slots/hold", headers=auth_headers(client_user), json={"slot_ids": ids}
    )
    assert response.status_code == 201
    data = response.json()
    assert data["hold_duration_minutes"] == 10
    assert [s["id"] for s in data["slots"]] == ids
    assert all(s["status"] == "held" and s["held_by_me"] for s in data["slots"])


@pytest.mark.asyncio
async def test_second_client_gets_slot_conflict(client, client_user, other_client, slots):
    ids = [str(s.id) for s in slots[:2]]
    first = await client.post(
        "/availability/slots/hold", headers=auth_headers(client_user), json={"slot_ids": ids}
    )
    assert first.status_code == 201

    second = await client.post(
        "/availability/slots/hold",
        headers=auth_headers(other_client),
        json={"slot_ids": [str(slots[1].id), str(slots[2].id)]},
    )
    assert second.status_code == 409
    body = second.json()
    assert body["code"] == "slot_conflict"
    assert body["slot_ids"] == [str(slots[1].id)]
    assert body["refresh_availability"] is True


@pytest.mark.asyncio
async def test_non_contiguous_selection_rejected(client, client_user, slots):
    response = await client.post(
        "/availability/slots/hold",
        headers=auth_headers(client_user),
        json={"slot_ids": [str(slots[0].id), str(slots[2].id)]},
    )
    assert response.status_code == 409
    assert response.json()["code"] == "non_contiguous_selection"


@pytest.mark.asyncio
async def test_duplicate_slot_ids_rejected(client, client_user, slots):
    slot_id = str(slots[0].id)
    response = await client.post(
        "/availability/slots/hold",
        headers=auth_headers(client_user),
        json={"slot_ids": [slot_id, slot_id]},
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_provider_cannot_hold(client, provider, slots):
    response = await client.post(
        "/availability/slots/hold",
        headers=auth_headers(provider),
        json={"slot_ids": [str(slots[0].id)]},
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_release_by_any_slot_releases_whole_hold(client, db, client_user, slots):
    ids = [str(s.id) for s in slots[:3]]
    await client.post("/availability/slots/hold", headers=auth_headers(client_user), json={"slot_ids": ids})

    response = await client.post(
        "/availability/slots/release",
        headers=auth_headers(client_user),
        json={"slot_ids": [ids[1]]},
    )
    assert response.status_code == 200
    assert response.json()["released_slots"] == 3

    statuses = await _statuses(db, [s.id for s in slots[:3]])
    assert set(statuses.values()) == {SlotStatus.AVAILABLE}


@pytest.mark.asyncio
async def test_release_ignores_foreign_holds(client, client_user, other_client, slots):
    ids = [str(slots[0].id)]
    await client.post("/availability/slots/hold", headers=auth_headers(client_user), json={"slot_ids": ids})

    response = await client.post(
        "/availability/slots/release", headers=auth_headers(other_client), json={"slot_ids": ids}
    )
    assert response.json()["released_slots"] == 0


@pytest.mark.asyncio
async def test_my_hold_endpoint(client, client_user, slots):
    empty = await client.get("/availability/holds/me", headers=auth_headers(client_user))
    assert empty.status_code == 200
    assert empty.json() is None

    await client.post(
        "/availability/slots/hold",
        headers=auth_headers(client_user),
        json={"slot_ids": [str(slots[0].id)]},
    )
    mine = await client.get("/availability/holds/me", headers=auth_headers(client_user))
    assert mine.json()["slots"][0]["id"] == str(slots[0].id)


@pytest.mark.asyncio
async def test_timeslots_show_held_by_me_only_to_holder(client, client_user, other_client, slots):
    await client.post(
        "/availability/slots/hold",
        headers=auth_headers(client_user),
        json={"slot_ids": [str(slots[0].id)]},
    )
    day = slots[0].start.date().isoformat()
    url = f"/availability/providers/{slots[0].provider_id}/timeslots?date={day}"

    mine = (await client.get(url, headers=auth_headers(client_user))).json()["slots"][0]
    theirs = (await client.get(url, headers=auth_headers(other_client))).json()["slots"][0]
    anonymous = (await client.get(url)).json()["slots"][0]

    assert mine["held_by_me"] is True
    assert theirs["held_by_me"] is False
    assert anonymous["status"] == "held" and anonymous["held_by_me"] is False


# ── Service ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_expired_hold_is_claimable(db, client_user, other_client, slots):
    ids = [s.id for s in slots[:2]]
    long_ago = utcnow() - timedelta(minutes=30)
    await holds.hold_slots(db, client_user.id, ids, now=long_ago)

    result = await holds.hold_slots(db, other_client.id, ids)
    assert result.hold.holder_id == other_client.id
    assert all(s.held_by == other_client.id for s in result.slots)


@pytest.mark.asyncio
async def test_hold_is_gone_at_exactly_expires_at(db, client_user, other_client, slots):
    held_at = utcnow()
    first = await holds.hold_slots(db, client_user.id, [slots[0].id], now=held_at)
    expires_at = first.hold.expires_at
    slot = first.slots[0]

    assert is_hold_active(slot, expires_at) is False
    assert effective_status(slot, expires_at) == SlotStatus.AVAILABLE
    assert await holds.get_active_hold(db, client_user.id, now=expires_at) is None

    taken = await holds.hold_slots(db, other_client.id, [slots[0].id], now=expires_at)
    assert taken.slots[0].held_by == other_client.id


@pytest.mark.asyncio
async def test_hold_still_active_a_microsecond_before_expiry(db, client_user, other_client, slots):
    held_at = utcnow()
    first = await holds.hold_slots(db, client_user.id, [slots[0].id], now=held_at)
    just_before = first.hold.expires_at - timedelta(microseconds=1)
    slot = first.slots[0]

    assert is_hold_active(slot, just_before) is True
    assert effective_status(slot, just_before) == SlotStatus.HELD
    assert await holds.get_active_hold(db, client_user.id, now=just_before) is not None

    with pytest.raises(SlotConflict):
        await holds.hold_slots(db, other_client.id, [slots[0].id], now=just_before)


@pytest.mark.asyncio
async def test_new_hold_replaces_previous(db, client_user, slots):
    first = [s.id for s in slots[:2]]
    second = [s.id for s in slots[2:]]
    await holds.hold_slots(db, client_user.id, first)
    await holds.hold_slots(db, client_user.id, second)

    statuses = await _statuses(db, first + second)
    assert [statuses[i] for i in first] == [SlotStatus.AVAILABLE, SlotStatus.AVAILABLE]
    assert [statuses[i] for i in second] == [SlotStatus.HELD, SlotStatus.HELD]

    remaining = (await db.execute(select(SlotHold).where(SlotHold.holder_id == client_user.id))).scalars().all()
    assert len(remaining) == 1


@pytest.mark.asyncio
async def test_failed_rehold_keeps_previous_hold(session_factory, client_user, other_client, slots):
    client_id, other_id = client_user.id, other_client.id
    mine = [slots[0].id]
    contested = [slots[2].id]

    async with session_factory() as session:
        await holds.hold_slots(session, client_id, mine)
    async with session_factory() as session:
        await holds.hold_slots(session, other_id, contested)

    async with session_factory() as session:
        with pytest.raises(SlotConflict):
            await holds.hold_slots(session, client_id, contested)

    async with session_factory() as session:
        active = await holds.get_active_hold(session, client_id)
        assert active is not None
        assert [s.id for s in active.slots] == mine


@pytest.mark.asyncio
async def test_started_slot_cannot_be_held(db, client_user, provider):
    past = await make_slots(db, provider.id, utcnow() - timedelta(minutes=30), 1)
    with pytest.raises(SlotConflict):
        await holds.hold_slots(db, client_user.id, [past[0].id])


@pytest.mark.asyncio
async def test_sweep_releases_only_expired_holds(db, client_user, other_client, provider):
    early = await make_slots(db, provider.id, future_day(4), 1)
    late = await make_slots(db, provider.id, future_day(5), 1)
    await holds.hold_slots(db, client_user.id, [early[0].id], now=utcnow() - timedelta(minutes=20))
    await holds.hold_slots(db, other_client.id, [late[0].id])

    outcome = await holds.sweep_expired_holds(db)

    assert (outcome.released_slots, outcome.deleted_holds) == (1, 1)
    statuses = await _statuses(db, [early[0].id, late[0].id])
    assert statuses[early[0].id] == SlotStatus.AVAILABLE
    assert statuses[late[0].id] == SlotStatus.HELD


@pytest.mark.asyncio
async def test_concurrent_holds_have_exactly_one_winner(db, session_factory, slots):
    ids = [s.id for s in slots[:2]]
    holders = await _clients(db, 6)

    async def attempt(holder_id):
        async with session_factory() as session:
            return await holds.hold_slots(session, holder_id, ids)

    results = await asyncio.gather(*(attempt(h) for h in holders), return_exceptions=True)

    winners = [r for r in results if isinstance(r, holds.HoldResult)]
    losers = [r for r in results if isinstance(r, SlotConflict)]
    assert len(winners) == 1
    assert len(losers) == len(holders) - 1
    statuses = await _statuses(db, ids)
    assert set(statuses.values()) == {SlotStatus.HELD}
    claimed = (await db.execute(select(SlotHold))).scalars().all()
    assert [h.holder_id for h in claimed] == [winners[0].hold.holder_id]
