"""
tests/test_slots.py
Rule validation, window expansion and slot regeneration.
"""

from datetime import date, datetime, time, timedelta, timezone

import pytest
from sqlalchemy import func, select

from services.availability import slots as slot_store
from services.availability.slots import Window, expand_window, validate_rule_set, validate_window
from shared.exceptions import InvalidRule, NonContiguousSelection, ValidationError
from shared.models.models import Slot, SlotStatus
from tests.conftest import auth_headers, future_day, make_slots


def _every_day(start: time, end: time, duration: int = 60, buffer: int = 0) -> list:
    return [
        dict(day_of_week=d, start_time=start, end_time=end, slot_duration=duration, buffer_minutes=buffer)
        for d in range(7)
    ]


async def _count_slots(db, provider_id, status=None) -> int:
    query = select(func.count(Slot.id)).where(Slot.provider_id == provider_id)
    if status is not None:
        query = query.where(Slot.status == status)
    return await db.scalar(query)


# ── Windows ───────────────────────────────────────────────────

def test_window_must_tile_exactly():
    with pytest.raises(InvalidRule):
        validate_window(Window(time(9, 0), time(10, 10), 30))


def test_window_end_before_start_rejected():
    with pytest.raises(InvalidRule):
        validate_window(Window(time(12, 0), time(9, 0), 30))


def test_buffered_window_expansion():
    window = Window(time(9, 0), time(10, 40), 30, 5)
    validate_window(window)

    pairs = expand_window(date(2030, 1, 7), window)
    assert [(s.time(), e.time()) for s, e in pairs] == [
        (time(9, 0), time(9, 30)),
        (time(9, 35), time(10, 5)),
        (time(10, 10), time(10, 40)),
    ]


def test_midnight_end_means_end_of_day():
    pairs = expand_window(date(2030, 1, 7), Window(time(22, 0), time(0, 0), 60))
    assert len(pairs) == 2
    assert pairs[-1][1] == datetime(2030, 1, 8, 0, 0, tzinfo=timezone.utc)


def test_overlapping_rules_rejected():
    with pytest.raises(InvalidRule):
        validate_rule_set(
            [
                (0, Window(time(9, 0), time(12, 0), 60)),
                (0, Window(time(11, 0), time(13, 0), 60)),
            ]
        )


def test_same_hours_on_different_days_allowed():
    validate_rule_set(
        [
            (0, Window(time(9, 0), time(12, 0), 60)),
            (1, Window(time(9, 0), time(12, 0), 60)),
        ]
    )


# ── Regeneration ──────────────────────────────────────────────

@pytest.mark.asyncio
async def test_generate_slots_is_idempotent(db, provider):
    now = future_day(1)
    await slot_store.replace_rules(db, provider.id, _every_day(time(9, 0), time(11, 0)))

    first = await slot_store.generate_slots(db, provider.id, now=now, horizon_days=7)
    await db.commit()
    second = await slot_store.generate_slots(db, provider.id, now=now, horizon_days=7)
    await db.commit()

    assert first.created == 14
    assert (second.created, second.removed) == (0, 0)
    assert await _count_slots(db, provider.id) == 14


@pytest.mark.asyncio
async def test_blocking_override_removes_available_slots(db, provider):
    now = future_day(1)
    await slot_store.replace_rules(db, provider.id, _every_day(time(9, 0), time(11, 0)))
    await slot_store.generate_slots(db, provider.id, now=now, horizon_days=7)
    await db.commit()

    blocked_day = (now + timedelta(days=2)).date()
    await slot_store.upsert_override(
        db, provider.id, {"date": blocked_day, "is_available": False, "reason": "Holiday"}, now=now
    )
    outcome = await slot_store.generate_slots(db, provider.id, now=now, horizon_days=7)
    await db.commit()

    assert outcome.removed == 2
    assert await _count_slots(db, provider.id) == 12


@pytest.mark.asyncio
async def test_custom_hours_override_replaces_the_day(db, provider):
    now = future_day(1)
    await slot_store.replace_rules(db, provider.id, _every_day(time(9, 0), time(11, 0)))
    day = (now + timedelta(days=1)).date()
    await slot_store.upsert_override(
        db,
        provider.id,
        {"date": day, "is_available": True, "start_time": time(14, 0), "end_time": time(17, 0)},
        now=now,
    )
    await slot_store.generate_slots(db, provider.id, now=now, horizon_days=7)
    await db.commit()

    midnight = datetime.combine(day, time(0, 0), tzinfo=timezone.utc)
    result = await db.execute(
        select(Slot.start)
        .where(Slot.provider_id == provider.id, Slot.start >= midnight, Slot.start < midnight + timedelta(days=1))
        .order_by(Slot.start)
    )
    assert [s.time() for s in result.scalars()] == [time(14, 0), time(15, 0), time(16, 0)]


@pytest.mark.asyncio
async def test_override_window_must_fit_template(db, provider):
    now = future_day(1)
    await slot_store.replace_rules(db, provider.id, _every_day(time(9, 0), time(11, 0)))
    with pytest.raises(InvalidRule):
        await slot_store.upsert_override(
            db,
            provider.id,
            {
                "date": (now + timedelta(days=1)).date(),
                "is_available": True,
                "start_time": time(14, 0),
                "end_time": time(14, 45),
            },
            now=now,
        )


@pytest.mark.asyncio
async def test_override_in_the_past_rejected(db, provider):
    now = future_day(1)
    with pytest.raises(ValidationError):
        await slot_store.upsert_override(
            db, provider.id, {"date": (now - timedelta(days=1)).date(), "is_available": False}, now=now
        )


@pytest.mark.asyncio
async def test_regeneration_never_touches_held_slots(db, provider):
    now = future_day(1)
    await slot_store.replace_rules(db, provider.id, _every_day(time(9, 0), time(11, 0)))
    await slot_store.generate_slots(db, provider.id, now=now, horizon_days=7)
    await db.commit()

    held = (
        await db.execute(select(Slot).where(Slot.provider_id == provider.id).order_by(Slot.start).limit(1))
    ).scalar_one()
    held.status = SlotStatus.HELD
    held.hold_expires_at = now + timedelta(days=30)
    await db.commit()

    await slot_store.replace_rules(db, provider.id, [])
    outcome = await slot_store.generate_slots(db, provider.id, now=now, horizon_days=7)
    await db.commit()

    assert outcome.removed == 13
    assert await _count_slots(db, provider.id) == 1
    assert await _count_slots(db, provider.id, SlotStatus.HELD) == 1


@pytest.mark.asyncio
async def test_new_rules_skip_times_overlapping_booked_slot(db, provider):
    now = future_day(1)
    day = now + timedelta(days=1)
    booked = (await make_slots(db, provider.id, day + timedelta(hours=9, minutes=30), 1))[0]
    booked.status = SlotStatus.BOOKED
    await db.commit()

    await slot_store.replace_rules(db, provider.id, _every_day(time(9, 0), time(12, 0)))
    await slot_store.generate_slots(db, provider.id, now=now, horizon_days=2)
    await db.commit()

    result = await db.execute(
        select(Slot.start)
        .where(Slot.provider_id == provider.id, Slot.start >= day, Slot.start < day + timedelta(days=1))
        .order_by(Slot.start)
    )
    # 09:00 and 10:00 would overlap the booked 09:30-10:30 slot
    assert [s.time() for s in result.scalars()] == [time(9, 30), time(11, 0)]


# ── Contiguity ────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_gap_between_slots_is_not_contiguous(db, provider):
    spaced = await make_slots(db, provider.id, future_day(2), 2, gap_minutes=15)
    with pytest.raises(NonContiguousSelection):
        slot_store.ensure_contiguous(spaced)


# ── API ───────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_provider_replaces_rules_via_api(client, provider):
    payload = {
        "rules": [
            {"day_of_week": 0, "start_time": "09:00", "end_time": "12:00", "slot_duration": 60},
            {"day_of_week": 2, "start_time": "13:00", "end_time": "15:00", "slot_duration": 30},
        ]
    }
    response = await client.put("/availability/rules", headers=auth_headers(provider), json=payload)
    assert response.status_code == 200
    assert len(response.json()) == 2

    listed = await client.get(f"/availability/providers/{provider.id}/rules")
    assert [r["day_of_week"] for r in listed.json()] == [0, 2]


@pytest.mark.asyncio
async def test_invalid_rule_returns_400(client, provider):
    payload = {"rules": [{"day_of_week": 1, "start_time": "09:00", "end_time": "09:50", "slot_duration": 30}]}
    response = await client.put("/availability/rules", headers=auth_headers(provider), json=payload)
    assert response.status_code == 400
    assert response.json()["code"] == "invalid_rule"


@pytest.mark.asyncio
async def test_client_cannot_edit_rules(client, client_user):
    response = await client.put("/availability/rules", headers=auth_headers(client_user), json={"rules": []})
    assert response.status_code == 403
