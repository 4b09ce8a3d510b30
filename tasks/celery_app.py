"""
tasks/celery_app.py
Celery application instance shared by all task modules.

Workers are started with:
    celery -A tasks.celery_app worker --loglevel=info --concurrency=4

Beat scheduler (periodic tasks):
    celery -A tasks.celery_app beat --loglevel=info
"""

from celery import Celery
from celery.schedules import crontab

from config.settings import settings

celery_app = Celery(
    "slotbook",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "tasks.availability_tasks",
        "tasks.booking_tasks",
        "tasks.payment_tasks",
    ],
)

# ── Configuration ─────────────────────────────────────────────

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Acknowledge after execution so a dying worker does not lose the task
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    result_expires=3600,
    task_max_retries=3,

    task_routes={
        "tasks.payment_tasks.*": {"queue": "payments"},
        "tasks.availability_tasks.*": {"queue": "default"},
        "tasks.booking_tasks.*": {"queue": "default"},
    },

    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────

celery_app.conf.beat_schedule = {
    # Expired holds are already invisible to reads; this keeps stored status fresh
    "release-expired-holds": {
        "task": "tasks.availability_tasks.release_expired_holds",
        "schedule": settings.HOLD_SWEEP_INTERVAL_SECONDS,
    },

    "auto-confirm-overdue-bookings": {
        "task": "tasks.booking_tasks.auto_confirm_overdue_bookings",
        "schedule": settings.AUTO_CONFIRM_INTERVAL_SECONDS,
    },

    # Keep every provider's rolling window SLOT_HORIZON_DAYS ahead
    "extend-slot-horizon": {
        "task": "tasks.availability_tasks.extend_slot_horizon",
        "schedule": crontab(hour=0, minute=15),
    },
}
