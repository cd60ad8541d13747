"""Plan construction for table reorganizations.

A plan is an ordered, immutable list of steps. Every input is validated against
the inspected object state, and every statement is rendered once for the target
dialect, before a plan is returned; a plan that builds is a plan that can run.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence, Tuple, Union

from table_reorg.dialects import SqlDialect
from table_reorg.errors import NotFoundError, ValidationError
from table_reorg.heuristics import MAX_PARALLEL_DEGREE, Tuning, tune
from table_reorg.inspector import ObjectInspector, ObjectState
from table_reorg.statements import (
    PARTITION_CHANGES, AddConstraint, AddPartition, ConstraintKind, CreateIndex, CreatePartitionedTable,
    CreateTableAs, DropPartition, DropTable, GatherStatistics, IntervalSpec, MergePartitions,
    MovePartition, MoveTable, PartitionDefinition, PartitionScheme, RebuildIndex, SplitPartition,
    Statement, StrategyType, SubpartitionScheme, SubpartitionType, TruncatePartition, check_identifier,
)

logger = logging.getLogger(__name__)

MIGRATE_STRATEGY = "MIGRATE_STRATEGY"
MOVE_TABLE = "MOVE_TABLE"
REMOVE_COLUMNS = "REMOVE_COLUMNS"
PARTITION_CHANGE = "PARTITION_CHANGE"
ROLLBACK = "ROLLBACK"
GATHER_STATISTICS = "GATHER_STATISTICS"
REBUILD_INDEXES = "REBUILD_INDEXES"
RETENTION_CLEANUP = "RETENTION_CLEANUP"

CLEANUP_ACTIONS = ("DROP", "TRUNCATE")


@dataclass(frozen=True)
class DesiredStrategy:
    strategy_type: StrategyType
    partition_column: Optional[str] = None
    interval_expression: Optional[str] = None
    reference_constraint: Optional[str] = None
    partitions: Tuple[PartitionDefinition, ...] = ()
    hash_partitions: int = 4
    subpartition_type: Optional[str] = None
    subpartition_column: Optional[str] = None
    subpartition_count: int = 4
    tablespace: Optional[str] = None
    retention_days: int = 90
    auto_maintenance: bool = True

    def __post_init__(self):
        object.__setattr__(self, "strategy_type", StrategyType.parse(self.strategy_type))
        if self.partition_column is not None:
            object.__setattr__(self, "partition_column", check_identifier(self.partition_column))
        if self.subpartition_column is not None:
            object.__setattr__(self, "subpartition_column", check_identifier(self.subpartition_column))
        if self.tablespace is not None:
            object.__setattr__(self, "tablespace", check_identifier(self.tablespace))
        object.__setattr__(self, "partitions", tuple(self.partitions))

    def to_scheme(self) -> Optional[PartitionScheme]:
        if self.strategy_type is StrategyType.NONE:
            return None
        sub = None
        if self.subpartition_type:
            try:
                sub_type = SubpartitionType(self.subpartition_type.upper())
            except ValueError:
                raise ValidationError(f"Invalid subpartition type {self.subpartition_type!r}") from None
            if not self.subpartition_column:
                raise ValidationError("Subpartitioning requires a subpartition column")
            sub = SubpartitionScheme(sub_type, self.subpartition_column, self.subpartition_count)
        interval = IntervalSpec.parse(self.interval_expression) if self.interval_expression else None
        return PartitionScheme(
            strategy=self.strategy_type,
            column=self.partition_column,
            interval=interval,
            reference_constraint=self.reference_constraint,
            partitions=self.partitions,
            hash_partitions=self.hash_partitions,
            subpartition=sub,
        )

    def config_values(self) -> dict:
        return {
            "strategy_type": self.strategy_type.value,
            "partition_column": self.partition_column,
            "interval_expression": str(IntervalSpec.parse(self.interval_expression)) if self.interval_expression else None,
            "subpartition_type": self.subpartition_type.upper() if self.subpartition_type else None,
            "subpartition_column": self.subpartition_column,
            "tablespace": self.tablespace,
            "retention_days": self.retention_days,
            "auto_maintenance": self.auto_maintenance,
        }


@dataclass(frozen=True)
class PlanOptions:
    preserve_data: bool = True
    keep_backup: bool = True
    online: bool = True
    parallel_degree: Optional[int] = None
    batch_size: Optional[int] = None
    checkpoint_batches: int = 10
    backup_name: Optional[str] = None


@dataclass(frozen=True)
class BulkLoad:
    """Batched copy from ``source`` into ``target``, executed by the bulk loader."""
    source: str
    target: str
    key: str
    columns: Optional[Tuple[str, ...]]
    batch_size: int
    parallel_degree: int
    checkpoint_batches: int = 10


@dataclass(frozen=True)
class PersistStrategy:
    """Write the declared strategy to the config store (no engine statement).

    mode: ``create`` replaces the active config, ``update`` merges ``values`` into it
    (creating one with ``fallback_strategy`` if none is active), ``deactivate`` retires it.
    """
    target_object: str
    mode: str
    values: Tuple[Tuple[str, object], ...] = ()
    fallback_strategy: str = "NONE"

    def as_dict(self) -> dict:
        return dict(self.values)


Action = Union[BulkLoad, PersistStrategy, Statement]


@dataclass(frozen=True)
class Step:
    step_number: int
    name: str
    action: Action
    description: str
    is_parallel: bool = False
    parallel_degree: int = 1


@dataclass(frozen=True)
class Plan:
    operation_type: str
    target_object: str
    steps: Tuple[Step, ...]
    tuning: Tuning
    backup_object: Optional[str] = None
    preserve_data: bool = True
    strategy: Optional[DesiredStrategy] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    def __len__(self) -> int:
        return len(self.steps)

    def step_names(self) -> List[str]:
        return [s.name for s in self.steps]


class _StepList:
    """Accumulates steps with contiguous 1-based numbering."""

    def __init__(self):
        self._steps: List[Step] = []

    def add(self, name: str, action, description: str, parallel_degree: int = 1):
        self._steps.append(Step(
            step_number=len(self._steps) + 1,
            name=name,
            action=action,
            description=description,
            is_parallel=parallel_degree > 1,
            parallel_degree=parallel_degree,
        ))

    def freeze(self) -> Tuple[Step, ...]:
        return tuple(self._steps)


def choose_load_key(state: ObjectState, preferred: Optional[str] = None,
                    columns: Optional[Sequence[str]] = None) -> str:
    """Watermark column: single-column primary key, else the partition column, else the first column."""
    available = list(columns) if columns is not None else state.column_names
    if len(state.primary_key) == 1 and state.primary_key[0] in available:
        return state.primary_key[0]
    if preferred and preferred in available:
        return preferred
    if not available:
        raise ValidationError(f"{state.name} has no columns to order a bulk load by")
    return available[0]


class PlanBuilder:
    def __init__(self, inspector: ObjectInspector, dialect: SqlDialect,
                 max_parallel_degree: int = MAX_PARALLEL_DEGREE,
                 clock: Callable[[], datetime] = datetime.now):
        self.inspector = inspector
        self.dialect = dialect
        self.max_parallel_degree = max_parallel_degree
        self._clock = clock

    # --- shared helpers -----------------------------------------------------------

    def _require(self, name: str, state: Optional[ObjectState] = None) -> ObjectState:
        normalized = check_identifier(name)
        state = state if state is not None else self.inspector.inspect(normalized)
        if not state.exists:
            raise NotFoundError("Table", normalized)
        return state

    def _tuning(self, state: ObjectState, options: PlanOptions, tuning: Optional[Tuning]) -> Tuning:
        t = tuning or tune(state.approx_size_bytes, self.max_parallel_degree)
        if options.parallel_degree is not None or options.batch_size is not None:
            if options.parallel_degree is not None and not 1 <= options.parallel_degree <= self.max_parallel_degree:
                raise ValidationError(f"parallel_degree must be between 1 and {self.max_parallel_degree}")
            if options.batch_size is not None and options.batch_size < 1:
                raise ValidationError("batch_size must be positive")
            t = Tuning(
                parallel_degree=options.parallel_degree or t.parallel_degree,
                batch_size=options.batch_size or t.batch_size,
                sampling_percent=t.sampling_percent,
            )
        return t

    def _backup_name(self, name: str, options: PlanOptions, suffix: str = "BACKUP") -> str:
        if options.backup_name:
            return check_identifier(options.backup_name)
        return check_identifier(f"{name}_{suffix}_{self._clock():%Y%m%d%H%M%S}")

    def _validate_strategy(self, state: ObjectState, desired: DesiredStrategy) -> Optional[PartitionScheme]:
        strategy = desired.strategy_type
        if strategy is not StrategyType.NONE and not self.dialect.supports(strategy):
            raise ValidationError(f"{strategy.value} partitioning is not supported by the {self.dialect.name} dialect")
        if strategy is StrategyType.REFERENCE:
            if not desired.reference_constraint:
                raise ValidationError("REFERENCE partitioning requires a foreign key constraint")
            fk = state.constraint(desired.reference_constraint)
            if fk is None or fk.kind is not ConstraintKind.FOREIGN_KEY:
                raise ValidationError(f"Foreign key {desired.reference_constraint} not found on {state.name}")
        elif strategy is not StrategyType.NONE:
            if not desired.partition_column:
                raise ValidationError(f"{strategy.value} partitioning requires a partition column")
            if not state.has_column(desired.partition_column):
                raise ValidationError(f"Column {desired.partition_column} does not exist in {state.name}")
        if desired.subpartition_column and not state.has_column(desired.subpartition_column):
            raise ValidationError(f"Column {desired.subpartition_column} does not exist in {state.name}")
        return desired.to_scheme()

    def _dependent_steps(self, steps: _StepList, table: str, state: ObjectState, degree: int,
                         dropped_columns: Sequence[str] = ()):
        dropped = set(dropped_columns)
        order = {ConstraintKind.PRIMARY_KEY: 0, ConstraintKind.UNIQUE: 1, ConstraintKind.FOREIGN_KEY: 2}
        for c in sorted(state.constraints, key=lambda c: order[c.kind]):
            if dropped.intersection(c.columns):
                continue
            steps.add(
                f"rebuild_constraint_{c.name.lower()}",
                AddConstraint(table, c.name, c.kind, c.columns, c.referred_table, c.referred_columns),
                f"Recreate {c.kind.value} constraint {c.name} on {table}",
            )
        for ix in state.indexes:
            if dropped.intersection(ix.columns):
                continue
            steps.add(
                f"rebuild_index_{ix.name.lower()}",
                CreateIndex(ix.name, table, ix.columns, unique=ix.unique, parallel_degree=degree),
                f"Recreate index {ix.name} on {table}",
                degree,
            )

    def _check_renderable(self, steps: Tuple[Step, ...]):
        for step in steps:
            if isinstance(step.action, (BulkLoad, PersistStrategy)):
                continue
            self.dialect.render(step.action)

    def _finish(self, operation_type: str, state: ObjectState, steps: _StepList, tuning: Tuning,
                backup: Optional[str], preserve: bool, desired: Optional[DesiredStrategy] = None) -> Plan:
        frozen = steps.freeze()
        self._check_renderable(frozen)
        plan = Plan(operation_type, state.name, frozen, tuning, backup, preserve, desired)
        logger.info(f"Built {operation_type} plan for {state.name}: {len(frozen)} steps, "
                    f"parallel_degree={tuning.parallel_degree} batch_size={tuning.batch_size}")
        return plan

    def _rebuild_pipeline(self, steps: _StepList, state: ObjectState, scheme: Optional[PartitionScheme],
                          tuning: Tuning, options: PlanOptions, columns: Optional[Tuple[str, ...]],
                          tablespace: Optional[str], dropped_columns: Sequence[str] = ()) -> str:
        """Snapshot, drop, recreate, reload, rebuild dependents, gather statistics."""
        name = state.name
        degree = tuning.parallel_degree
        if options.preserve_data:
            backup = self._backup_name(name, options)
            steps.add("snapshot", CreateTableAs(backup, name, parallel_degree=degree),
                      f"Copy all rows of {name} into {backup}", degree)
        else:
            backup = self._backup_name(name, options, suffix="SHAPE")
            steps.add("capture_structure", CreateTableAs(backup, name, empty=True),
                      f"Capture the column layout of {name} in {backup} (no rows)")
        steps.add("drop_original", DropTable(name), f"Drop {name}")
        if scheme is not None:
            create = CreatePartitionedTable(name, backup, scheme, degree, columns=columns, tablespace=tablespace)
            desc = f"Create {name} as {scheme.strategy.value} partitioned on {scheme.column or scheme.reference_constraint}"
        else:
            create = CreateTableAs(name, backup, columns=columns, empty=True, parallel_degree=degree, tablespace=tablespace)
            desc = f"Create {name} without partitioning"
        steps.add("create_structure", create, desc, degree)
        if options.preserve_data:
            key = choose_load_key(state, scheme.column if scheme is not None else None, columns)
            steps.add("reload", BulkLoad(backup, name, key, columns, tuning.batch_size, degree, options.checkpoint_batches),
                      f"Reload rows from {backup} into {name} in batches of {tuning.batch_size} ordered by {key}", degree)
        self._dependent_steps(steps, name, state, degree, dropped_columns)
        steps.add("gather_statistics", GatherStatistics(name, tuning.sampling_percent, degree),
                  f"Gather statistics on {name} at {tuning.sampling_percent}% sampling", degree)
        if not options.keep_backup or not options.preserve_data:
            steps.add("drop_backup", DropTable(backup, purge=True), f"Drop {backup}")
        return backup

    # --- plan kinds ---------------------------------------------------------------

    def build(self, object_name: str, desired: DesiredStrategy, options: PlanOptions = PlanOptions(),
              current_state: Optional[ObjectState] = None, tuning: Optional[Tuning] = None) -> Plan:
        """Strategy migration plan; raises ValidationError (NotFoundError for a missing table)."""
        state = self._require(object_name, current_state)
        scheme = self._validate_strategy(state, desired)
        tuning = self._tuning(state, options, tuning)
        steps = _StepList()
        backup = self._rebuild_pipeline(steps, state, scheme, tuning, options, None, desired.tablespace)
        if desired.strategy_type is StrategyType.NONE:
            persist = PersistStrategy(state.name, "deactivate")
        else:
            persist = PersistStrategy(state.name, "create", tuple(desired.config_values().items()))
        steps.add("persist_strategy", persist, f"Record {desired.strategy_type.value} as the declared strategy of {state.name}")
        return self._finish(MIGRATE_STRATEGY, state, steps, tuning,
                            backup if options.preserve_data and options.keep_backup else None,
                            options.preserve_data, desired)

    def build_remove_columns(self, object_name: str, columns: Sequence[str], options: PlanOptions = PlanOptions(),
                             strategy: Optional[DesiredStrategy] = None) -> Plan:
        """Recreate the table without ``columns``; a partitioned table needs its declared strategy."""
        state = self._require(object_name)
        drop = [check_identifier(c) for c in columns]
        if not drop:
            raise ValidationError("No columns to remove")
        missing = [c for c in drop if not state.has_column(c)]
        if missing:
            raise ValidationError(f"Columns {missing} do not exist in {state.name}")
        remaining = tuple(c for c in state.column_names if c not in drop)
        if not remaining:
            raise ValidationError(f"Cannot remove every column of {state.name}")
        scheme = None
        if state.is_structured:
            if strategy is None:
                raise ValidationError(f"{state.name} is partitioned; its declared strategy is required to recreate it")
            if strategy.partition_column in drop or strategy.subpartition_column in drop:
                raise ValidationError("Cannot remove a partitioning column")
            scheme = self._validate_strategy(state, strategy)
        tuning = self._tuning(state, options, None)
        steps = _StepList()
        backup = self._rebuild_pipeline(steps, state, scheme, tuning, options, remaining,
                                        strategy.tablespace if strategy else None, drop)
        return self._finish(REMOVE_COLUMNS, state, steps, tuning,
                            backup if options.preserve_data and options.keep_backup else None,
                            options.preserve_data, strategy)

    def build_move(self, object_name: str, tablespace: Optional[str], options: PlanOptions = PlanOptions()) -> Plan:
        """Relocate (or compact in place, when ``tablespace`` is None) and rebuild indexes."""
        state = self._require(object_name)
        ts = check_identifier(tablespace) if tablespace else None
        tuning = self._tuning(state, options, None)
        degree = tuning.parallel_degree
        steps = _StepList()
        target = f"tablespace {ts}" if ts else "its current tablespace"
        steps.add("move_table", MoveTable(state.name, ts, degree, options.online),
                  f"Move {state.name} to {target}", degree)
        for ix in state.indexes:
            steps.add(f"rebuild_index_{ix.name.lower()}", RebuildIndex(ix.name, degree, online=options.online),
                      f"Rebuild index {ix.name}", degree)
        steps.add("gather_statistics", GatherStatistics(state.name, tuning.sampling_percent, degree),
                  f"Gather statistics on {state.name}", degree)
        if ts:
            steps.add("persist_strategy",
                      PersistStrategy(state.name, "update", (("tablespace", ts),), state.structure_kind or "NONE"),
                      f"Record {ts} as the tablespace of {state.name}")
        return self._finish(MOVE_TABLE, state, steps, tuning, None, True)

    def build_partition_change(self, object_name: str, change, options: PlanOptions = PlanOptions()) -> Plan:
        """Single partition maintenance operation followed by a statistics refresh."""
        if not isinstance(change, PARTITION_CHANGES):
            raise ValidationError(f"{type(change).__name__} is not a partition operation")
        state = self._require(object_name)
        if change.table != state.name:
            raise ValidationError(f"Partition operation targets {change.table}, not {state.name}")
        if not state.is_structured:
            raise ValidationError(f"{state.name} is not partitioned")
        existing = set(state.partitions) | {p[len(state.name) + 1:] for p in state.partitions if p.startswith(state.name + "_")}
        referenced: List[str] = []
        if isinstance(change, (DropPartition, TruncatePartition, SplitPartition, MovePartition)):
            referenced = [change.partition]
        elif isinstance(change, MergePartitions):
            referenced = [change.first, change.second]
        for p in referenced:
            if state.partitions and p not in existing:
                raise NotFoundError("Partition", f"{state.name}.{p}")
        if isinstance(change, AddPartition) and change.partition.name in existing:
            raise ValidationError(f"Partition {change.partition.name} already exists on {state.name}")
        tuning = self._tuning(state, options, None)
        steps = _StepList()
        kind = type(change).__name__
        degree = getattr(change, "parallel_degree", 1)
        steps.add(f"{_snake(kind)}", change, f"{kind} on {state.name}", degree)
        steps.add("gather_statistics", GatherStatistics(state.name, tuning.sampling_percent, tuning.parallel_degree),
                  f"Gather statistics on {state.name}", tuning.parallel_degree)
        return self._finish(PARTITION_CHANGE, state, steps, tuning, None, True)

    def build_retention_cleanup(self, object_name: str, retention_days: int, action: str = "DROP",
                                options: PlanOptions = PlanOptions()) -> Plan:
        """Drop (or truncate) every partition whose range ends on or before today minus ``retention_days``.

        Partitions without a date upper bound (MAXVALUE, LIST, numeric ranges) are kept,
        and so is the newest partition, since a partitioned table cannot lose its last one.
        The plan has no steps when nothing is past retention.
        """
        state = self._require(object_name)
        if not state.is_structured:
            raise ValidationError(f"{state.name} is not partitioned")
        if retention_days is None or int(retention_days) < 1:
            raise ValidationError("retention_days must be a positive number of days")
        action = (action or "DROP").upper()
        if action not in CLEANUP_ACTIONS:
            raise ValidationError(f"Invalid cleanup action {action!r}; expected one of {CLEANUP_ACTIONS}")
        cutoff = self._clock().date() - timedelta(days=int(retention_days))
        expired = [b for b in state.partition_bounds if b.upper is not None and b.upper <= cutoff]
        if action == "DROP" and state.partition_bounds and len(expired) == len(state.partition_bounds):
            newest = max(expired, key=lambda b: b.upper)
            logger.warning(f"Keeping {state.name}.{newest.name}: it is the last partition")
            expired = [b for b in expired if b is not newest]
        tuning = self._tuning(state, options, None)
        steps = _StepList()
        for bound in expired:
            partition = self._partition_ref(state.name, bound.name)
            if action == "DROP":
                steps.add(f"drop_partition_{partition.lower()}", DropPartition(state.name, partition),
                          f"Drop {state.name}.{partition}, ended {bound.upper:%Y-%m-%d} (before {cutoff:%Y-%m-%d})")
            else:
                steps.add(f"truncate_partition_{partition.lower()}", TruncatePartition(state.name, partition),
                          f"Truncate {state.name}.{partition}, ended {bound.upper:%Y-%m-%d} (before {cutoff:%Y-%m-%d})")
        if expired:
            steps.add("gather_statistics", GatherStatistics(state.name, tuning.sampling_percent, tuning.parallel_degree),
                      f"Gather statistics on {state.name}", tuning.parallel_degree)
        else:
            logger.info(f"No partition of {state.name} ended before {cutoff:%Y-%m-%d}")
        return self._finish(RETENTION_CLEANUP, state, steps, tuning, None, True)

    def _partition_ref(self, table: str, partition: str) -> str:
        # PostgreSQL partitions are child tables named TABLE_PARTITION
        if self.dialect.name == "postgresql" and partition.startswith(table + "_"):
            return partition[len(table) + 1:]
        return partition

    def build_rollback(self, object_name: str, backup_object: str, options: PlanOptions = PlanOptions()) -> Plan:
        """Drop the current table (if present) and recreate it from ``backup_object``."""
        name = check_identifier(object_name)
        backup_state = self.inspector.inspect(backup_object)
        if not backup_state.exists:
            raise NotFoundError("Backup table", check_identifier(backup_object))
        current = self.inspector.inspect(name)
        tuning = self._tuning(backup_state, options, None)
        degree = tuning.parallel_degree
        steps = _StepList()
        if current.exists:
            steps.add("drop_current", DropTable(name), f"Drop {name}")
        steps.add("restore_from_backup", CreateTableAs(name, backup_state.name, parallel_degree=degree),
                  f"Recreate {name} from {backup_state.name}", degree)
        steps.add("gather_statistics", GatherStatistics(name, tuning.sampling_percent, degree),
                  f"Gather statistics on {name}", degree)
        state = ObjectState(name=name, exists=True)
        return self._finish(ROLLBACK, state, steps, tuning, backup_state.name, True)

    def build_statistics_refresh(self, object_name: str, sampling_percent: Optional[int] = None,
                                 options: PlanOptions = PlanOptions()) -> Plan:
        state = self._require(object_name)
        tuning = self._tuning(state, options, None)
        pct = sampling_percent or tuning.sampling_percent
        steps = _StepList()
        steps.add("gather_statistics", GatherStatistics(state.name, pct, tuning.parallel_degree),
                  f"Gather statistics on {state.name} at {pct}% sampling", tuning.parallel_degree)
        return self._finish(GATHER_STATISTICS, state, steps, tuning, None, True)

    def build_index_rebuild(self, object_name: str, options: PlanOptions = PlanOptions()) -> Plan:
        state = self._require(object_name)
        if not state.indexes:
            raise ValidationError(f"{state.name} has no indexes to rebuild")
        tuning = self._tuning(state, options, None)
        degree = tuning.parallel_degree
        steps = _StepList()
        for ix in state.indexes:
            steps.add(f"rebuild_index_{ix.name.lower()}", RebuildIndex(ix.name, degree, online=options.online),
                      f"Rebuild index {ix.name}", degree)
        return self._finish(REBUILD_INDEXES, state, steps, tuning, None, True)


def _snake(name: str) -> str:
    out = []
    for i, ch in enumerate(name):
        if ch.isupper() and i:
            out.append("_")
        out.append(ch.lower())
    return "".join(out)
