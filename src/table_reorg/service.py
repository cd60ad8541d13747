"""Library entry point for table reorganizations.

Wires inspector, planner, driver, audit log and config store together and exposes
the operations callers use: plan and execute a strategy migration, roll back from
a backup, read the operation history and the declared strategy of a table.
"""
from __future__ import annotations
import logging
from contextlib import contextmanager
from typing import Callable, ContextManager, Iterator, List, Optional, Sequence, Union

from sqlalchemy.engine import Engine

from table_reorg.audit import AuditLog, AuditLogConfig, OperationLogEntry
from table_reorg.config import Settings, get_settings, resolve_dialect_name
from table_reorg.config_store import StrategyConfigRecord, StrategyConfigStore
from table_reorg.dialects import SqlDialect, get_dialect
from table_reorg.driver import ExecutionDriver, ExecutionResult, LockRegistry, object_locks
from table_reorg.errors import NotFoundError, ValidationError
from table_reorg.executor import SqlAlchemyExecutor, StatementExecutor
from table_reorg.heuristics import estimate_impact
from table_reorg.inspector import Catalog, ObjectInspector, ObjectState, SqlAlchemyCatalog
from table_reorg.planner import DesiredStrategy, Plan, PlanBuilder, PlanOptions

logger = logging.getLogger(__name__)

ExecutorFactory = Callable[[], ContextManager[StatementExecutor]]


class MigrationService:
    def __init__(self, engine: Optional[Engine] = None, dialect: Optional[SqlDialect] = None,
                 catalog: Optional[Catalog] = None, audit: Optional[AuditLog] = None,
                 config_store: Optional[StrategyConfigStore] = None,
                 executor_factory: Optional[ExecutorFactory] = None,
                 locks: Optional[LockRegistry] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        if engine is None and (catalog is None or executor_factory is None):
            from table_reorg.infrastructure import db
            engine = db.engine
        self.engine = engine
        self.dialect = dialect or get_dialect(resolve_dialect_name(self.settings))
        self.inspector = ObjectInspector(catalog or SqlAlchemyCatalog(engine, self.dialect.name))
        self.planner = PlanBuilder(self.inspector, self.dialect, self.settings.max_parallel_degree)
        self.audit = audit or AuditLog(config=AuditLogConfig(
            enabled=self.settings.audit_logging_enabled,
            retention_days=self.settings.audit_retention_days,
        ))
        self.config_store = config_store or StrategyConfigStore()
        self._executor_factory = executor_factory or self._connection_executor
        self.locks = locks or object_locks

    @contextmanager
    def _connection_executor(self) -> Iterator[StatementExecutor]:
        with self.engine.connect() as conn:
            yield SqlAlchemyExecutor(conn, self.dialect)

    def _options(self, options: Union[PlanOptions, dict, None]) -> PlanOptions:
        if isinstance(options, PlanOptions):
            return options
        values = {
            "keep_backup": self.settings.keep_backup,
            "checkpoint_batches": self.settings.loader_checkpoint_batches,
        }
        values.update(options or {})
        return PlanOptions(**values)

    def _desired(self, desired: Union[DesiredStrategy, dict, str]) -> DesiredStrategy:
        if isinstance(desired, DesiredStrategy):
            return desired
        values = dict(desired) if isinstance(desired, dict) else {"strategy_type": desired}
        values.setdefault("hash_partitions", self.settings.default_hash_partitions)
        return DesiredStrategy(**values)

    def _declared_strategy(self, object_name: str) -> Optional[DesiredStrategy]:
        try:
            rec = self.config_store.get(object_name)
        except NotFoundError:
            return None
        return DesiredStrategy(
            strategy_type=rec.strategy_type,
            partition_column=rec.partition_column,
            interval_expression=rec.interval_expression,
            subpartition_type=rec.subpartition_type,
            subpartition_column=rec.subpartition_column,
            tablespace=rec.tablespace,
            retention_days=rec.retention_days,
            auto_maintenance=rec.auto_maintenance,
        )

    # --- planning -----------------------------------------------------------------

    def inspect(self, object_name: str) -> ObjectState:
        return self.inspector.inspect(object_name)

    def estimate(self, object_name: str) -> dict:
        state = self.inspector.inspect(object_name)
        if not state.exists:
            raise NotFoundError("Table", state.name)
        return estimate_impact(state.approx_size_bytes)

    def plan_migration(self, object_name: str, desired_strategy: Union[DesiredStrategy, dict, str],
                       options: Union[PlanOptions, dict, None] = None) -> Plan:
        """Raises ValidationError (NotFoundError for a missing table); nothing is executed or logged."""
        return self.planner.build(object_name, self._desired(desired_strategy), self._options(options))

    def plan_move(self, object_name: str, tablespace: Optional[str],
                  options: Union[PlanOptions, dict, None] = None) -> Plan:
        return self.planner.build_move(object_name, tablespace, self._options(options))

    def plan_remove_columns(self, object_name: str, columns: Sequence[str],
                            options: Union[PlanOptions, dict, None] = None) -> Plan:
        return self.planner.build_remove_columns(object_name, columns, self._options(options),
                                                 self._declared_strategy(object_name))

    def plan_partition_change(self, object_name: str, change,
                              options: Union[PlanOptions, dict, None] = None) -> Plan:
        return self.planner.build_partition_change(object_name, change, self._options(options))

    def plan_retention_cleanup(self, object_name: str, retention_days: Optional[int] = None,
                               action: str = "DROP", options: Union[PlanOptions, dict, None] = None) -> Plan:
        """Remove partitions past retention; ``retention_days`` defaults to the declared strategy's."""
        if retention_days is None:
            declared = self._declared_strategy(object_name)
            if declared is None:
                raise ValidationError(f"{object_name} has no declared strategy; retention_days is required")
            retention_days = declared.retention_days
        return self.planner.build_retention_cleanup(object_name, retention_days, action, self._options(options))

    def plan_statistics_refresh(self, object_name: str, sampling_percent: Optional[int] = None) -> Plan:
        return self.planner.build_statistics_refresh(object_name, sampling_percent, self._options(None))

    def plan_index_rebuild(self, object_name: str, options: Union[PlanOptions, dict, None] = None) -> Plan:
        return self.planner.build_index_rebuild(object_name, self._options(options))

    # --- execution ----------------------------------------------------------------

    def execute_plan(self, plan: Plan) -> ExecutionResult:
        """Raises StepExecutionError (after auditing it) or ObjectLockedError."""
        with self._executor_factory() as executor:
            driver = ExecutionDriver(executor, self.audit, self.config_store, self.locks)
            return driver.execute(plan)

    def migrate(self, object_name: str, desired_strategy: Union[DesiredStrategy, dict, str],
                options: Union[PlanOptions, dict, None] = None) -> ExecutionResult:
        with self._executor_factory() as executor:
            driver = ExecutionDriver(executor, self.audit, self.config_store, self.locks)
            return driver.run(lambda: self.plan_migration(object_name, desired_strategy, options))

    def rollback(self, object_name: str, backup_object: str) -> str:
        """Drop ``object_name`` and recreate it from ``backup_object``. Explicit and manual."""
        plan = self.planner.build_rollback(object_name, backup_object, self._options(None))
        logger.warning(f"Rolling back {plan.target_object} from {backup_object}")
        return self.execute_plan(plan).status

    # --- reads --------------------------------------------------------------------

    def get_operation_history(self, target_object: Optional[str] = None, operation_type: Optional[str] = None,
                              status: Optional[str] = None, start=None, end=None,
                              limit: Optional[int] = None) -> Iterator[OperationLogEntry]:
        return self.audit.history(target_object=target_object, operation_type=operation_type,
                                  status=status, start=start, end=end, limit=limit)

    def get_operation_steps(self, operation_id: int) -> List[OperationLogEntry]:
        return self.audit.steps(operation_id)

    def get_config(self, object_name: str) -> StrategyConfigRecord:
        return self.config_store.get(object_name)

    def purge_audit_log(self, retention_days: Optional[int] = None) -> int:
        return self.audit.purge(retention_days)
