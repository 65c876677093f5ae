"""Celery tasks driving the durable scan queue."""
import logging
import os
import socket
from typing import Optional

from app.workers.celery_app import celery_app
from app.config import get_settings
from app.services.errors import PersistenceError
from app.services.scan_pipeline import ScanJobSpec, run_scan, summarize_outcome
from app.services.scan_store import ScanStore

logger = logging.getLogger(__name__)

settings = get_settings()


def _worker_id() -> str:
    return settings.worker_id or f"{socket.gethostname()}:{os.getpid()}"


def _store() -> ScanStore:
    return ScanStore(settings=settings)


@celery_app.task(name="app.workers.scan_tasks.run_scan_job")
def run_scan_job(scan_id: str, url: str, max_pages: int, max_duration_seconds: int, job_id: Optional[int] = None):
    """Run one claimed scan to a terminal state."""
    spec = ScanJobSpec(
        scan_id=scan_id,
        url=url,
        max_pages=int(max_pages),
        max_duration_seconds=int(max_duration_seconds),
        job_id=job_id,
    )
    logger.info("Starting scan %s for %s", spec.scan_id, spec.url)
    outcome = run_scan(spec)
    return summarize_outcome(outcome)


@celery_app.task(name="app.workers.scan_tasks.poll_scan_queue")
def poll_scan_queue():
    """Claim the next queued scan (if any) and run it in this worker."""
    store = _store()
    try:
        spec = store.claim_next_job(_worker_id())
    except PersistenceError as exc:
        logger.error("Could not poll the scan queue: %s", exc)
        return {"claimed": False, "error": str(exc)}
    if spec is None:
        return {"claimed": False}

    logger.info("Claimed scan %s (job %s)", spec.scan_id, spec.job_id)
    outcome = run_scan(spec)
    return {"claimed": True, **summarize_outcome(outcome)}


@celery_app.task(name="app.workers.scan_tasks.scan_queue_watchdog")
def scan_queue_watchdog():
    """Fail jobs abandoned by dead workers and prune finished ones."""
    store = _store()
    stale = store.fail_stale_jobs(settings.stale_job_grace_seconds)
    removed = store.cleanup_old_jobs(settings.job_retention_days)
    if stale:
        logger.warning("Watchdog failed %d stale scan jobs", stale)
    return {"stale_failed": stale, "removed": removed}
