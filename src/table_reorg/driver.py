"""Plan execution state machine.

IDLE -> PLANNING -> EXECUTING(step) -> SUCCEEDED | FAILED

The driver runs one step at a time, halts on the first failure and never retries
or rolls back structural changes on its own; intermediate objects are left for
inspection or an explicit rollback plan. Every transition is mirrored in the audit
log, which commits independently of the statements being run.
"""
from __future__ import annotations
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Tuple, Union

import redis
from prometheus_client import Counter, Gauge
from redis.exceptions import LockError

from table_reorg.audit import AuditLog, ERROR, SUCCESS, WARNING
from table_reorg.config_store import StrategyConfigStore
from table_reorg.errors import (
    NotFoundError, ObjectLockedError, PartialDataWarning, StatementError, StepExecutionError, ValidationError,
)
from table_reorg.executor import StatementExecutor, error_code
from table_reorg.loader import BulkLoader
from table_reorg.planner import BulkLoad, PersistStrategy, Plan, Step

logger = logging.getLogger(__name__)

OPERATIONS = Counter('reorg_operations_total', 'Executed reorganization plans', ['operation_type', 'status'])
STEPS = Counter('reorg_steps_total', 'Executed plan steps', ['step', 'result'])
RUNNING = Gauge('reorg_operations_running', 'Plans currently executing')


class DriverState(Enum):
    IDLE = "IDLE"
    PLANNING = "PLANNING"
    EXECUTING = "EXECUTING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


@dataclass
class ExecutionResult:
    status: str  # SUCCESS|WARNING
    operation_id: Optional[int]
    steps_completed: int
    rows_processed: int
    state: DriverState = DriverState.SUCCEEDED
    warnings: List[PartialDataWarning] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state is DriverState.SUCCEEDED


class ObjectLockRegistry:
    """In-process mutual exclusion per table name; a second holder fails fast."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, name: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(name.upper(), threading.Lock())

    def is_locked(self, name: str) -> bool:
        return self._lock_for(name).locked()

    @contextmanager
    def hold(self, name: str) -> Iterator[None]:
        lock = self._lock_for(name)
        if not lock.acquire(blocking=False):
            raise ObjectLockedError(name.upper())
        try:
            yield
        finally:
            lock.release()


class RedisObjectLockRegistry:
    """Per-table mutual exclusion shared by every process using the same Redis; a second holder fails fast.

    Locks expire after ``timeout`` seconds so a killed worker cannot keep a table locked.
    """

    def __init__(self, client, timeout: int = 86400, prefix: str = "table_reorg:lock:"):
        self.client = client
        self.timeout = timeout
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, timeout: int = 86400) -> "RedisObjectLockRegistry":
        return cls(redis.Redis.from_url(url), timeout)

    def _lock(self, name: str):
        return self.client.lock(f"{self.prefix}{name.upper()}", timeout=self.timeout, blocking=False)

    def is_locked(self, name: str) -> bool:
        return bool(self._lock(name).locked())

    @contextmanager
    def hold(self, name: str) -> Iterator[None]:
        lock = self._lock(name)
        if not lock.acquire(blocking=False):
            raise ObjectLockedError(name.upper())
        try:
            yield
        finally:
            try:
                lock.release()
            except LockError as e:
                logger.warning(f"Lock on {name.upper()} expired before release: {e}")


object_locks = ObjectLockRegistry()
LockRegistry = Union[ObjectLockRegistry, RedisObjectLockRegistry]


class ExecutionDriver:
    def __init__(self, executor: StatementExecutor, audit: AuditLog, config_store: StrategyConfigStore,
                 locks: Optional[LockRegistry] = None, loader: Optional[BulkLoader] = None):
        self.executor = executor
        self.audit = audit
        self.config_store = config_store
        self.locks = locks or object_locks
        self.loader = loader or BulkLoader(executor, audit)
        self.state = DriverState.IDLE
        self.current_step: Optional[int] = None

    def run(self, build_plan: Callable[[], Plan]) -> ExecutionResult:
        """Plan then execute. A planning ValidationError ends in FAILED with nothing executed or audited."""
        self.state = DriverState.PLANNING
        try:
            plan = build_plan()
        except ValidationError:
            self.state = DriverState.FAILED
            raise
        return self.execute(plan)

    def execute(self, plan: Plan) -> ExecutionResult:
        if not plan.steps:
            self.state = DriverState.FAILED
            raise ValidationError(f"Plan for {plan.target_object} has no steps")
        with self.locks.hold(plan.target_object):
            RUNNING.inc()
            try:
                return self._execute_locked(plan)
            finally:
                RUNNING.dec()

    def _sql_for(self, step: Step) -> Optional[str]:
        if isinstance(step.action, (BulkLoad, PersistStrategy)):
            return None
        return ";\n".join(self.executor.render(step.action))

    def _execute_locked(self, plan: Plan) -> ExecutionResult:
        self.state = DriverState.EXECUTING
        t0 = time.time()
        operation_id = self.audit.start(
            plan.operation_type, plan.target_object,
            message=f"Executing {len(plan.steps)} steps",
            context={
                "steps": plan.step_names(),
                "backup_object": plan.backup_object,
                "parallel_degree": plan.tuning.parallel_degree,
                "batch_size": plan.tuning.batch_size,
                "sampling_percent": plan.tuning.sampling_percent,
                "strategy": plan.strategy.strategy_type.value if plan.strategy else None,
            },
        )
        rows_total = 0
        completed = 0
        warnings: List[PartialDataWarning] = []
        for step in plan.steps:
            self.current_step = step.step_number
            sql_text = self._sql_for(step)
            step_id = self.audit.start(
                "STEP", plan.target_object, message=f"{step.step_number}. {step.name}: {step.description}",
                parent_operation_id=operation_id, sql_text=sql_text,
                context={"step_number": step.step_number, "step": step.name, "parallel_degree": step.parallel_degree},
            )
            try:
                rows, warning = self._run_step(step, operation_id)
            except Exception as e:
                self._fail(plan, step, operation_id, step_id, sql_text, completed, rows_total, e)
                raise StepExecutionError(
                    f"Step {step.step_number} ({step.name}) failed on {plan.target_object}: {e}",
                    operation_id=operation_id, step_number=step.step_number, step_name=step.name,
                    sql_text=getattr(e, "sql_text", None) or sql_text,
                ) from e
            rows_total += rows
            completed += 1
            if warning is not None:
                warnings.append(warning)
            STEPS.labels(step=step.name, result="warning" if warning else "ok").inc()
            self.audit.finish(step_id, WARNING if warning else SUCCESS,
                              message=warning.message if warning else None, rows_processed=rows)
        status = WARNING if warnings else SUCCESS
        self.state = DriverState.SUCCEEDED
        self.current_step = None
        self.audit.finish(
            operation_id, status,
            message=f"Completed {completed} steps in {time.time() - t0:.1f}s",
            rows_processed=rows_total, objects_affected=completed,
        )
        OPERATIONS.labels(operation_type=plan.operation_type, status=status).inc()
        logger.info(f"{plan.operation_type} on {plan.target_object} finished with {status}: "
                    f"{completed} steps, {rows_total} rows")
        return ExecutionResult(status, operation_id, completed, rows_total, DriverState.SUCCEEDED, warnings)

    def _run_step(self, step: Step, operation_id: Optional[int]) -> Tuple[int, Optional[PartialDataWarning]]:
        action = step.action
        if isinstance(action, BulkLoad):
            result = self.loader.load(action, parent_operation_id=operation_id)
            return result.rows_moved, result.warning
        if isinstance(action, PersistStrategy):
            self._persist(action)
            return 0, None
        rows = self.executor.execute(action)
        self.executor.commit()
        return rows, None

    def _persist(self, action: PersistStrategy):
        values = action.as_dict()
        if action.mode == "create":
            self.config_store.create(action.target_object, **values)
        elif action.mode == "update":
            try:
                self.config_store.update(action.target_object, **values)
            except NotFoundError:
                self.config_store.create(action.target_object, action.fallback_strategy, **values)
        elif action.mode == "deactivate":
            self.config_store.deactivate(action.target_object)
        else:
            raise ValidationError(f"Unknown persist mode {action.mode!r}")

    def _fail(self, plan: Plan, step: Step, operation_id: Optional[int], step_id: Optional[int],
              sql_text: Optional[str], completed: int, rows_total: int, exc: Exception):
        self.state = DriverState.FAILED
        try:
            self.executor.rollback()
        except Exception as rollback_error:
            logger.error(f"Rollback after failed step {step.step_number} on {plan.target_object} failed: {rollback_error}")
        failing_sql = exc.sql_text if isinstance(exc, StatementError) and exc.sql_text else sql_text
        code = exc.error_code if isinstance(exc, StatementError) else error_code(exc)
        self.audit.finish(step_id, ERROR, sql_text=failing_sql, error_code=code, error_message=str(exc))
        self.audit.finish(
            operation_id, ERROR,
            message=f"Failed at step {step.step_number} ({step.name}) after {completed} completed steps",
            sql_text=failing_sql, error_code=code, error_message=str(exc),
            rows_processed=rows_total, objects_affected=completed,
            context={"failed_step": step.step_number, "backup_object": plan.backup_object},
        )
        STEPS.labels(step=step.name, result="error").inc()
        OPERATIONS.labels(operation_type=plan.operation_type, status=ERROR).inc()
        logger.error(f"{plan.operation_type} on {plan.target_object} failed at step {step.step_number} "
                     f"({step.name}): {exc}")
