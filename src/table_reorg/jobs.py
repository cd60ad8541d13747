"""Maintenance job runner.

Jobs are rows in ``maintenance_jobs``; an external scheduler (or the Celery beat
task in ``table_reorg.tasks.maintenance``) decides when to call ``execute_job`` or
``run_due_jobs``. A job whose dependency did not last succeed is skipped. The next
run time is recomputed after every run, whatever the outcome.

A run first claims its row (status RUNNING, next_run advanced) in its own
committed transaction, so a second worker polling while it runs skips the job.
Only SUCCESS counts toward success_count; a WARNING run is executed but neither
succeeded nor failed, matching the dependency rule that requires SUCCESS.
"""
from __future__ import annotations
import calendar
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from prometheus_client import Counter
from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from table_reorg.audit import ERROR, SUCCESS, WARNING
from table_reorg.errors import NotFoundError, ValidationError
from table_reorg.models.tables import MaintenanceJob
from table_reorg.statements import check_identifier

logger = logging.getLogger(__name__)

JOB_RUNS = Counter('reorg_maintenance_job_runs_total', 'Maintenance job executions', ['job_type', 'status'])

SKIPPED = "SKIPPED"
RUNNING = "RUNNING"
JOB_TYPES = ("GATHER_STATS", "REBUILD_INDEXES", "MIGRATE", "MOVE", "PURGE_LOGS", "CLEANUP_PARTITIONS")
SCHEDULE_TYPES = ("HOURLY", "DAILY", "WEEKLY", "MONTHLY")


@dataclass(frozen=True)
class JobOutcome:
    job_id: int
    job_name: str
    status: str  # SUCCESS|WARNING|ERROR|SKIPPED
    message: str
    duration_ms: int
    next_run: Optional[datetime]


class _JobWarning(Exception):
    """Operation finished with a PartialDataWarning."""


def add_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def compute_next_run(schedule_type: str, schedule_value: int, now: datetime) -> datetime:
    value = max(1, schedule_value or 1)
    if schedule_type == "HOURLY":
        return now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=value)
    if schedule_type == "DAILY":
        return now.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=value)
    if schedule_type == "WEEKLY":
        return now + timedelta(weeks=value)
    if schedule_type == "MONTHLY":
        return add_months(now, value)
    return now + timedelta(days=1)


def _default_session_factory() -> Session:
    from table_reorg.infrastructure import db
    return db.SessionLocal()


class MaintenanceJobRunner:
    def __init__(self, service, session_factory: Optional[Callable[[], Session]] = None,
                 clock: Callable[[], datetime] = datetime.utcnow, claim_timeout: timedelta = timedelta(hours=24)):
        self.service = service
        self._session_factory = session_factory or _default_session_factory
        self._clock = clock
        self.claim_timeout = claim_timeout

    def create_job(self, job_name: str, target_object: str, job_type: str, schedule_type: str = "DAILY",
                   schedule_value: int = 1, depends_on: Optional[List[int]] = None,
                   job_parameters: Optional[dict] = None, resource_limits: Optional[dict] = None) -> int:
        job_type = job_type.upper()
        schedule_type = schedule_type.upper()
        if job_type not in JOB_TYPES:
            raise ValidationError(f"Invalid job type {job_type!r}; allowed: {', '.join(JOB_TYPES)}")
        if schedule_type not in SCHEDULE_TYPES:
            raise ValidationError(f"Invalid schedule type {schedule_type!r}; allowed: {', '.join(SCHEDULE_TYPES)}")
        target = check_identifier(target_object)
        session = self._session_factory()
        try:
            for dep in depends_on or []:
                if session.get(MaintenanceJob, dep) is None:
                    raise NotFoundError("Maintenance job", str(dep))
            job = MaintenanceJob(
                job_name=job_name,
                target_object=target,
                job_type=job_type,
                schedule_type=schedule_type,
                schedule_value=schedule_value,
                depends_on=list(depends_on or []),
                job_parameters=job_parameters or {},
                resource_limits=resource_limits or {},
                is_active=True,
                next_run=compute_next_run(schedule_type, schedule_value, self._clock()),
                execution_count=0,
                success_count=0,
                failure_count=0,
            )
            session.add(job)
            session.commit()
            logger.info(f"Created maintenance job {job_name} ({job_type} on {target}), next run {job.next_run}")
            return job.id
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def set_active(self, job_id: int, active: bool) -> None:
        session = self._session_factory()
        try:
            job = session.get(MaintenanceJob, job_id)
            if job is None:
                raise NotFoundError("Maintenance job", str(job_id))
            job.is_active = active
            session.commit()
        finally:
            session.close()

    def _unmet_dependency(self, session: Session, job: MaintenanceJob) -> Optional[str]:
        for dep_id in job.depends_on or []:
            dep = session.get(MaintenanceJob, dep_id)
            if dep is None:
                return f"dependency {dep_id} no longer exists"
            if dep.last_status != SUCCESS:
                return f"dependency {dep.job_name} last status {dep.last_status or 'never run'}"
        return None

    def _options(self, job: MaintenanceJob) -> dict:
        limits = job.resource_limits or {}
        options: dict = {}
        cap = limits.get("max_parallel_degree")
        if cap:
            tuned = self.service.estimate(job.target_object)["parallel_degree"]
            options["parallel_degree"] = max(1, min(int(cap), tuned))
        if limits.get("batch_size"):
            options["batch_size"] = int(limits["batch_size"])
        return options

    def _dispatch(self, job: MaintenanceJob) -> str:
        params = job.job_parameters or {}
        if job.job_type == "PURGE_LOGS":
            removed = self.service.purge_audit_log(params.get("retention_days"))
            return f"purged {removed} audit entries"
        options = self._options(job)
        if job.job_type == "GATHER_STATS":
            plan = self.service.plan_statistics_refresh(job.target_object, params.get("sampling_percent"))
            result = self.service.execute_plan(plan)
        elif job.job_type == "REBUILD_INDEXES":
            result = self.service.execute_plan(self.service.plan_index_rebuild(job.target_object, options))
        elif job.job_type == "MOVE":
            result = self.service.execute_plan(self.service.plan_move(job.target_object, params.get("tablespace"), options))
        elif job.job_type == "CLEANUP_PARTITIONS":
            plan = self.service.plan_retention_cleanup(job.target_object, params.get("retention_days"),
                                                       params.get("action", "DROP"), options)
            if not plan.steps:
                return "no partitions past retention"
            result = self.service.execute_plan(plan)
        elif job.job_type == "MIGRATE":
            if "strategy" not in params:
                raise ValidationError(f"MIGRATE job {job.job_name} has no strategy parameter")
            result = self.service.migrate(job.target_object, params["strategy"], options)
        else:
            raise ValidationError(f"Unsupported job type {job.job_type}")
        if result.status == WARNING:
            raise _JobWarning(f"operation {result.operation_id} completed with warnings")
        return f"operation {result.operation_id}: {result.steps_completed} steps, {result.rows_processed} rows"

    def _claim(self, job_id: int) -> Optional[JobOutcome]:
        """Mark the job RUNNING and advance next_run; returns a SKIPPED outcome when another run holds it.

        A RUNNING claim older than ``claim_timeout`` is taken over (its worker is presumed dead).
        """
        now = self._clock()
        session = self._session_factory()
        try:
            job = session.get(MaintenanceJob, job_id)
            if job is None:
                raise NotFoundError("Maintenance job", str(job_id))
            claimed = session.execute(
                update(MaintenanceJob)
                .where(
                    MaintenanceJob.id == job_id,
                    or_(MaintenanceJob.last_status.is_(None), MaintenanceJob.last_status != RUNNING,
                        MaintenanceJob.last_run <= now - self.claim_timeout),
                )
                .values(last_status=RUNNING, last_run=now,
                        next_run=compute_next_run(job.schedule_type, job.schedule_value, now))
                .execution_options(synchronize_session=False)
            ).rowcount
            session.commit()
            if claimed == 1:
                return None
            logger.info(f"Maintenance job {job.job_name} is already running since {job.last_run}")
            JOB_RUNS.labels(job_type=job.job_type, status=SKIPPED).inc()
            return JobOutcome(job.id, job.job_name, SKIPPED, f"Skipped: already running since {job.last_run}",
                              0, job.next_run)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def execute_job(self, job_id: int) -> JobOutcome:
        """Run one job now. Failures are recorded on the job row and then re-raised."""
        busy = self._claim(job_id)
        if busy is not None:
            return busy
        session = self._session_factory()
        try:
            job = session.get(MaintenanceJob, job_id)
            if job is None:
                raise NotFoundError("Maintenance job", str(job_id))
            t0 = time.time()
            failure: Optional[Exception] = None
            unmet = self._unmet_dependency(session, job)
            if unmet:
                status, message = SKIPPED, f"Skipped: {unmet}"
                logger.info(f"Maintenance job {job.job_name} skipped: {unmet}")
            else:
                try:
                    status, message = SUCCESS, self._dispatch(job)
                except _JobWarning as w:
                    status, message = WARNING, str(w)
                except Exception as e:
                    status, message, failure = ERROR, str(e), e
                    logger.error(f"Maintenance job {job.job_name} failed: {e}")
            duration_ms = int((time.time() - t0) * 1000)
            now = self._clock()
            job.last_run = now
            job.last_status = status
            job.last_duration_ms = duration_ms
            job.last_error = message[:1024] if status == ERROR else None
            job.execution_count = (job.execution_count or 0) + (0 if status == SKIPPED else 1)
            if status == SUCCESS:
                job.success_count = (job.success_count or 0) + 1
            elif status == ERROR:
                job.failure_count = (job.failure_count or 0) + 1
            job.next_run = compute_next_run(job.schedule_type, job.schedule_value, now)
            session.commit()
            JOB_RUNS.labels(job_type=job.job_type, status=status).inc()
            self.service.audit.record(
                "MAINTENANCE_JOB", WARNING if status == SKIPPED else status, target_object=job.target_object,
                message=f"{job.job_name}: {message}", duration_ms=duration_ms,
                context={"job_id": job.id, "job_type": job.job_type, "next_run": job.next_run.isoformat()},
            )
            outcome = JobOutcome(job.id, job.job_name, status, message, duration_ms, job.next_run)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        if failure is not None:
            raise failure
        return outcome

    def due_jobs(self, now: Optional[datetime] = None) -> List[int]:
        now = now or self._clock()
        session = self._session_factory()
        try:
            return list(session.scalars(
                select(MaintenanceJob.id)
                .where(MaintenanceJob.is_active.is_(True), MaintenanceJob.next_run <= now)
                .order_by(MaintenanceJob.next_run, MaintenanceJob.id)
            ))
        finally:
            session.close()

    def run_due_jobs(self, now: Optional[datetime] = None) -> List[JobOutcome]:
        """Execute every due job; one job failing does not stop the others."""
        outcomes: List[JobOutcome] = []
        for job_id in self.due_jobs(now):
            try:
                outcomes.append(self.execute_job(job_id))
            except Exception as e:
                # already recorded on the job row
                logger.warning(f"Maintenance job {job_id} ended with error: {e}")
                outcomes.append(self._last_outcome(job_id, str(e)))
        logger.info(f"Ran {len(outcomes)} due maintenance jobs")
        return outcomes

    def _last_outcome(self, job_id: int, message: str) -> JobOutcome:
        session = self._session_factory()
        try:
            job = session.get(MaintenanceJob, job_id)
            return JobOutcome(job_id, job.job_name if job else str(job_id), ERROR, message,
                              (job.last_duration_ms or 0) if job else 0, job.next_run if job else None)
        finally:
            session.close()

