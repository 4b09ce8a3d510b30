"""
tests/test_tasks.py
Celery wiring and the background job wrappers. Tasks are called
directly, not through a broker.
"""

from contextlib import asynccontextmanager

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from config.database import Base
from tasks import availability_tasks, booking_tasks, payment_tasks
from tasks.celery_app import celery_app


def _sqlite_task_session(path):
    @asynccontextmanager
    async def task_session():
        engine = create_async_engine(f"sqlite+aiosqlite:///{path}")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        try:
            async with AsyncSession(engine, expire_on_commit=False) as session:
                yield session
                await session.commit()
        finally:
            await engine.dispose()

    return task_session


@asynccontextmanager
async def _unreachable_db():
    raise OSError("database unreachable")
    yield


def test_beat_schedule():
    schedule = celery_app.conf.beat_schedule
    assert schedule["release-expired-holds"]["task"] == "tasks.availability_tasks.release_expired_holds"
    assert schedule["auto-confirm-overdue-bookings"]["task"] == "tasks.booking_tasks.auto_confirm_overdue_bookings"
    assert "extend-slot-horizon" in schedule


def test_refunds_are_routed_to_payments_queue():
    assert celery_app.conf.task_routes["tasks.payment_tasks.*"] == {"queue": "payments"}


def test_hold_sweep_task(tmp_path, monkeypatch):
    monkeypatch.setattr(availability_tasks, "task_session", _sqlite_task_session(tmp_path / "tasks.db"))
    assert availability_tasks.release_expired_holds() == {"released_slots": 0, "deleted_holds": 0}


def test_hold_sweep_task_logs_and_skips_on_failure(monkeypatch):
    monkeypatch.setattr(availability_tasks, "task_session", _unreachable_db)
    assert availability_tasks.release_expired_holds() is None


def test_auto_confirm_task(tmp_path, monkeypatch):
    monkeypatch.setattr(booking_tasks, "task_session", _sqlite_task_session(tmp_path / "tasks.db"))
    assert booking_tasks.auto_confirm_overdue_bookings() == 0


def test_extend_horizon_with_no_providers(tmp_path, monkeypatch):
    monkeypatch.setattr(availability_tasks, "task_session", _sqlite_task_session(tmp_path / "tasks.db"))
    assert availability_tasks.extend_slot_horizon() == 0


def test_refund_task_surfaces_failure_when_called_directly(monkeypatch):
    async def failing_refund(payment_id, amount):
        raise ConnectionError("razorpay down")

    monkeypatch.setattr(payment_tasks, "_refund", failing_refund)
    with pytest.raises(ConnectionError):
        payment_tasks.process_refund("8d5c1e0a-0000-4000-8000-000000000001", "10.00")
