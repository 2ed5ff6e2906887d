# rentbilling/workers/celery_app.py
from __future__ import annotations

from celery import Celery
from celery.schedules import crontab

from ..config import settings

BROKER = settings.celery_broker_url or "redis://localhost:6379/0"
BACKEND = settings.celery_result_backend or "redis://localhost:6379/1"

celery_app = Celery(
    "rentbilling",
    broker=BROKER,
    backend=BACKEND,
    include=["rentbilling.workers.billing_tasks"],
)

celery_app.conf.update(
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_reject_on_worker_lost=True,
    task_track_started=True,
    timezone="UTC",
)

celery_app.conf.task_routes = {
    "rentbilling.workers.billing_tasks.*": {"queue": "billing"},
}

# Generation runs daily, not monthly: it is idempotent, and a missed day
# (worker down on the 1st) is caught up by the next run.
celery_app.conf.beat_schedule = {
    "generate-monthly-invoices": {
        "task": "rentbilling.workers.billing_tasks.generate_current_month",
        "schedule": crontab(minute=0, hour=settings.invoice_generation_hour_utc),
    },
    "sweep-overdue-invoices": {
        "task": "rentbilling.workers.billing_tasks.sweep_overdue",
        "schedule": crontab(minute=0, hour=settings.overdue_sweep_hour_utc),
    },
}
