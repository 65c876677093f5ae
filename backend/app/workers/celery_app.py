from celery import Celery
from celery.signals import setup_logging

from app.config import get_settings
from app.logging_config import configure_logging

settings = get_settings()

celery_app = Celery(
    "equalshield",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["app.workers.scan_tasks"],
)

# Hard ceiling leaves room for persistence after the scan's own duration limit
_scan_time_limit = int(settings.scan_default_max_duration_seconds) + 120

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=_scan_time_limit,
    task_soft_time_limit=_scan_time_limit - 60,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "app.workers.scan_tasks.run_scan_job": {"queue": "scans"},
        "app.workers.scan_tasks.poll_scan_queue": {"queue": "scans"},
        "app.workers.scan_tasks.scan_queue_watchdog": {"queue": "scans.maintenance"},
    },
    task_annotations={
        "app.workers.scan_tasks.scan_queue_watchdog": {
            "time_limit": 120,
            "soft_time_limit": 90,
        },
    },
    beat_schedule={
        "poll-scan-queue": {
            "task": "app.workers.scan_tasks.poll_scan_queue",
            "schedule": float(settings.queue_poll_interval_seconds),
        },
        "scan-queue-watchdog": {
            "task": "app.workers.scan_tasks.scan_queue_watchdog",
            "schedule": 300.0,
        },
    },
)


@setup_logging.connect
def _configure_worker_logging(**kwargs):
    configure_logging(settings.log_level)
