from celery import Celery
from celery import signals
import time
from prometheus_client import Counter, Histogram
from table_reorg.config import configure_logging, get_settings

settings = get_settings()
configure_logging(settings)

celery_app = Celery(
    "table_reorg",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "table_reorg.tasks.maintenance",
    ],
)

celery_app.conf.update(task_serializer="json", result_serializer="json", accept_content=["json"], timezone="UTC", enable_utc=True)

# Long-running reorganizations: one task per worker process at a time
celery_app.conf.update(worker_prefetch_multiplier=1, task_acks_late=True)

TASK_SUCCESS = Counter('reorg_celery_task_success_total', 'Celery task successes', ['task'])
TASK_FAILURE = Counter('reorg_celery_task_failure_total', 'Celery task failures', ['task'])
TASK_DURATION = Histogram('reorg_celery_task_duration_seconds', 'Celery task runtime', ['task'],
                          buckets=(0.1, 0.5, 1, 5, 30, 60, 300, 1800, 3600, 14400))

_task_start_times = {}


@signals.task_prerun.connect
def _task_prerun(sender=None, task_id=None, **kwargs):  # noqa
    _task_start_times[task_id] = time.time()


@signals.task_postrun.connect
def _task_postrun(sender=None, task_id=None, state=None, **kwargs):  # noqa
    name = sender.name if sender else 'unknown'
    start = _task_start_times.pop(task_id, None)
    if start is not None:
        TASK_DURATION.labels(task=name).observe(time.time() - start)
    if state == 'SUCCESS':
        TASK_SUCCESS.labels(task=name).inc()
    elif state is not None:
        TASK_FAILURE.labels(task=name).inc()


# Periodic tasks (beat). Requires worker with -B or separate beat service.
celery_app.conf.beat_schedule = {
    "run-due-maintenance-jobs": {
        "task": "table_reorg.tasks.maintenance.run_due_jobs",
        "schedule": float(settings.job_poll_interval_seconds),
    },
    "purge-audit-log-daily": {
        "task": "table_reorg.tasks.maintenance.purge_audit_log",
        "schedule": float(settings.audit_purge_interval_seconds),
    },
}
