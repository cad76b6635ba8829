"""
tasks/celery_app.py
Celery application instance, shared across all task modules.

Workers are started with:
    celery -A tasks.celery_app worker --loglevel=info --concurrency=4 -Q default,notifications

Beat scheduler (periodic tasks):
    celery -A tasks.celery_app beat --loglevel=info
"""

from celery import Celery

from config.settings import settings

celery_app = Celery(
    "mentor_marketplace",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "tasks.notification_tasks",
        "tasks.booking_tasks",
    ],
)

# ── Configuration ─────────────────────────────────────────────────────────────

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Acknowledge AFTER execution so a dying worker does not lose the task
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    result_expires=3600,

    # Graph throttles per mailbox
    task_annotations={
        "tasks.notification_tasks.send_email": {"rate_limit": "20/s"},
    },

    task_default_queue="default",
    task_routes={
        "tasks.notification_tasks.*": {"queue": "notifications"},
        "tasks.booking_tasks.*": {"queue": "default"},
    },

    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────────────────────

celery_app.conf.beat_schedule = {
    # Confirmed sessions whose slot has ended become completed
    "complete-elapsed-bookings": {
        "task": "tasks.booking_tasks.complete_elapsed_bookings",
        "schedule": 300,  # every 5 minutes
    },
}
