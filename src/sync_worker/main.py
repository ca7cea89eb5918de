"""Celery application for sync worker."""

from celery import Celery
from celery.schedules import crontab

from commerce_sync.config import get_settings

settings = get_settings()

# Create Celery app
app = Celery(
    "sync_worker",
    broker=settings.celery_broker,
    backend=settings.celery_backend,
    include=[
        "sync_worker.tasks.sync_tenants",
    ],
)

# Celery configuration
app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=6 * 60 * 60,  # fleet runs walk every tenant
    task_soft_time_limit=6 * 60 * 60 - 300,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_default_queue="sync",
    task_routes={
        "sync_worker.tasks.*": {"queue": "sync"},
    },
)

# Beat schedule: daily catch-up resync in case webhooks were missed
app.conf.beat_schedule = {
    "sync-all-tenants": {
        "task": "sync_worker.tasks.sync_tenants.sync_all_tenants",
        "schedule": crontab(minute=settings.sync_cron_minute, hour=settings.sync_cron_hour),
    },
}


def run() -> None:
    """Run the Celery worker."""
    app.worker_main(["worker", "--loglevel=info", "-Q", "sync"])


if __name__ == "__main__":
    run()
