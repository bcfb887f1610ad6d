"""
Celery Application Configuration
"""
from celery import Celery

from app.core.config import settings

celery_app = Celery(
    "shop_payments",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "restock-stale-pending-every-5-minutes": {
        "task": "app.workers.tasks.restock_stale_pending_orders",
        "schedule": 300.0,
    },
    "restock-stuck-reserving-every-5-minutes": {
        "task": "app.workers.tasks.restock_stuck_reserving_orders",
        "schedule": 300.0,
    },
    "restock-stale-no-payment-every-5-minutes": {
        "task": "app.workers.tasks.restock_stale_no_payment_orders",
        "schedule": 300.0,
    },
    # job1: יישוב ניסיונות פעילים מול invoice/status
    "janitor-job1-every-minute": {
        "task": "app.workers.tasks.run_janitor_job",
        "schedule": 60.0,
        "args": ("job1",),
    },
    # job2: ניסיונות creating בלי חשבונית
    "janitor-job2-every-minute": {
        "task": "app.workers.tasks.run_janitor_job",
        "schedule": 60.0,
        "args": ("job2",),
    },
    "needs-review-report-hourly": {
        "task": "app.workers.tasks.run_janitor_job",
        "schedule": 3600.0,
        "args": ("job4",),
    },
}

# במצב store האירועים נשמרים בלבד — ה-consumer מחיל אותם
if settings.WEBHOOK_MODE == "store":
    celery_app.conf.beat_schedule["process-stored-webhooks-every-10-seconds"] = {
        "task": "app.workers.tasks.process_stored_webhook_events",
        "schedule": 10.0,
    }
