from __future__ import annotations
import logging
from celery import shared_task
from table_reorg.config import get_settings
from table_reorg.driver import RedisObjectLockRegistry
from table_reorg.errors import ReorgError
from table_reorg.jobs import MaintenanceJobRunner
from table_reorg.service import MigrationService

logger = logging.getLogger(__name__)


def _runner() -> MaintenanceJobRunner:
    # workers run in separate processes; table locks must be shared through Redis
    settings = get_settings()
    locks = RedisObjectLockRegistry.from_url(settings.redis_url, settings.object_lock_timeout_seconds)
    return MaintenanceJobRunner(MigrationService(locks=locks, settings=settings))


@shared_task
def run_due_jobs():
    """Execute every active maintenance job whose next_run has passed."""
    outcomes = _runner().run_due_jobs()
    by_status: dict[str, int] = {}
    for o in outcomes:
        by_status[o.status] = by_status.get(o.status, 0) + 1
    return {"status": "ok", "jobs": len(outcomes), "by_status": by_status}


@shared_task
def execute_job(job_id: int):
    try:
        outcome = _runner().execute_job(job_id)
    except ReorgError as e:
        logger.error(f"Maintenance job {job_id} failed: {e}")
        return {"status": "error", "job_id": job_id, "error": str(e)}
    return {"status": "ok", "job_id": job_id, "job_status": outcome.status, "next_run": outcome.next_run.isoformat() if outcome.next_run else None}


@shared_task
def purge_audit_log(retention_days: int | None = None):
    removed = MigrationService().purge_audit_log(retention_days)
    return {"status": "ok", "deleted": removed}
