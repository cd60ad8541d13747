"""Dialect renderers for typed statements.

Each renderer returns a list of SQL strings for one statement; most statements
render to a single string, a few (PostgreSQL partitioned create, partition drop)
need several. Identifiers are quoted through SQLAlchemy's identifier preparer for
the target dialect and literals through a small typed literal renderer.
"""
from __future__ import annotations
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy.dialects.oracle.base import OracleDialect as _SAOracleDialect
from sqlalchemy.dialects.postgresql.base import PGDialect as _SAPGDialect

from table_reorg.errors import UnsupportedOperationError
from table_reorg.statements import (
    AddConstraint, AddPartition, ConstraintKind, CreateIndex, CreatePartitionedTable,
    CreateTableAs, DropPartition, DropTable, GatherStatistics, InsertRange, IntervalSpec,
    MergePartitions, MovePartition, MoveTable, PartitionDefinition, PartitionScheme, RebuildIndex,
    SelectUpperBound, SplitPartition, StrategyType, TruncatePartition,
)

logger = logging.getLogger(__name__)


class SqlDialect:
    """Base renderer: dispatches on statement type."""

    name = "generic"
    supported_strategies: frozenset = frozenset()

    def __init__(self, sa_dialect):
        self._preparer = sa_dialect.identifier_preparer
        self._renderers: Dict[type, Callable[[Any], List[str]]] = {
            CreateTableAs: self._create_table_as,
            CreatePartitionedTable: self._create_partitioned_table,
            DropTable: self._drop_table,
            InsertRange: self._insert_range,
            SelectUpperBound: self._select_upper_bound,
            CreateIndex: self._create_index,
            AddConstraint: self._add_constraint,
            RebuildIndex: self._rebuild_index,
            GatherStatistics: self._gather_statistics,
            MoveTable: self._move_table,
            AddPartition: self._add_partition,
            DropPartition: self._drop_partition,
            TruncatePartition: self._truncate_partition,
            SplitPartition: self._split_partition,
            MergePartitions: self._merge_partitions,
            MovePartition: self._move_partition,
        }

    def render(self, stmt) -> List[str]:
        renderer = self._renderers.get(type(stmt))
        if renderer is None:
            raise UnsupportedOperationError(f"{type(stmt).__name__} is not a renderable statement")
        return renderer(stmt)

    def supports(self, strategy: StrategyType) -> bool:
        return strategy in self.supported_strategies

    # --- helpers -----------------------------------------------------------------

    def ident(self, name: str) -> str:
        lowered = name.lower()
        quoted = self._preparer.quote(lowered)
        if quoted != lowered:
            return self._quote_exact(name)
        return lowered

    def _quote_exact(self, name: str) -> str:
        return self._preparer.quote_identifier(name.lower())

    def idents(self, names: Sequence[str]) -> str:
        return ", ".join(self.ident(n) for n in names)

    def literal(self, value: Any) -> str:
        if value is None:
            return "NULL"
        if isinstance(value, bool):
            return self._bool_literal(value)
        if isinstance(value, (int, Decimal)):
            return str(value)
        if isinstance(value, float):
            return repr(value)
        if isinstance(value, datetime):
            return self._timestamp_literal(value)
        if isinstance(value, date):
            return f"DATE '{value.isoformat()}'"
        if isinstance(value, bytes):
            return self._bytes_literal(value)
        if isinstance(value, UUID):
            return f"'{value}'"
        return "'" + str(value).replace("'", "''") + "'"

    def literals(self, values: Sequence[Any]) -> str:
        return ", ".join(self.literal(v) for v in values)

    @staticmethod
    def _timestamp_text(value: datetime) -> str:
        # microseconds are kept so a watermark bound round-trips exactly
        text = value.strftime('%Y-%m-%d %H:%M:%S')
        if value.microsecond:
            text += f".{value.microsecond:06d}"
        return text

    @staticmethod
    def _utc_offset(value: datetime) -> Optional[str]:
        offset = value.utcoffset()
        if offset is None:
            return None
        minutes = int(offset.total_seconds() // 60)
        sign = "-" if minutes < 0 else "+"
        hours, minutes = divmod(abs(minutes), 60)
        return f"{sign}{hours:02d}:{minutes:02d}"

    def _timestamp_literal(self, value: datetime) -> str:
        offset = self._utc_offset(value)
        if offset is None:
            return f"TIMESTAMP '{self._timestamp_text(value)}'"
        return f"TIMESTAMP WITH TIME ZONE '{self._timestamp_text(value)}{offset}'"

    def _bytes_literal(self, value: bytes) -> str:
        return f"'\\x{value.hex()}'::bytea"

    def _bool_literal(self, value: bool) -> str:
        return "TRUE" if value else "FALSE"

    def _select_list(self, columns) -> str:
        return self.idents(columns) if columns else "*"

    def _unsupported(self, what: str):
        raise UnsupportedOperationError(f"{what} is not supported by the {self.name} dialect")

    # --- renderers shared by both dialects ------------------------------------------

    def _range_predicate(self, key: str, lower, upper) -> str:
        parts = []
        if lower is not None:
            parts.append(f"{key} > {self.literal(lower)}")
        if upper is not None:
            parts.append(f"{key} <= {self.literal(upper)}")
        if not parts:
            parts.append(f"{key} IS NOT NULL")
        return " AND ".join(parts)

    def _insert_where(self, s: InsertRange) -> str:
        key = self.ident(s.key)
        if s.nulls_only:
            return f"{key} IS NULL"
        return self._range_predicate(key, s.lower, s.upper)

    def _add_constraint(self, s: AddConstraint) -> List[str]:
        sql = (f"ALTER TABLE {self.ident(s.table)} ADD CONSTRAINT {self.ident(s.name)} "
               f"{s.kind.value} ({self.idents(s.columns)})")
        if s.kind is ConstraintKind.FOREIGN_KEY:
            sql += f" REFERENCES {self.ident(s.referred_table)}"
            if s.referred_columns:
                sql += f" ({self.idents(s.referred_columns)})"
        return [sql]

    # subclasses implement the rest
    def _create_table_as(self, s): raise NotImplementedError
    def _create_partitioned_table(self, s): raise NotImplementedError
    def _drop_table(self, s): raise NotImplementedError
    def _insert_range(self, s): raise NotImplementedError
    def _select_upper_bound(self, s): raise NotImplementedError
    def _create_index(self, s): raise NotImplementedError
    def _rebuild_index(self, s): raise NotImplementedError
    def _gather_statistics(self, s): raise NotImplementedError
    def _move_table(self, s): raise NotImplementedError
    def _add_partition(self, s): raise NotImplementedError
    def _drop_partition(self, s): raise NotImplementedError
    def _truncate_partition(self, s): raise NotImplementedError
    def _split_partition(self, s): raise NotImplementedError
    def _merge_partitions(self, s): raise NotImplementedError
    def _move_partition(self, s): raise NotImplementedError


class OracleDialect(SqlDialect):
    name = "oracle"
    supported_strategies = frozenset(s for s in StrategyType if s is not StrategyType.NONE)

    def __init__(self):
        super().__init__(_SAOracleDialect())

    def _quote_exact(self, name: str) -> str:
        # quoted identifiers are case sensitive; unquoted ones resolve upper case
        return self._preparer.quote_identifier(name.upper())

    def _bool_literal(self, value: bool) -> str:
        return "1" if value else "0"

    def _timestamp_literal(self, value: datetime) -> str:
        offset = self._utc_offset(value)
        suffix = f" {offset}" if offset else ""
        return f"TIMESTAMP '{self._timestamp_text(value)}{suffix}'"

    def _bytes_literal(self, value: bytes) -> str:
        return f"HEXTORAW('{value.hex().upper()}')"

    @staticmethod
    def _parallel(degree: int) -> str:
        return f"PARALLEL {degree}" if degree and degree > 1 else "NOPARALLEL"

    def _interval(self, spec: IntervalSpec) -> str:
        if spec.unit in ("YEAR", "MONTH"):
            return f"NUMTOYMINTERVAL({spec.amount}, '{spec.unit}')"
        return f"NUMTODSINTERVAL({spec.amount}, '{spec.unit}')"

    def _partition_clause(self, p: PartitionDefinition, strategy: StrategyType) -> str:
        if strategy is StrategyType.LIST or strategy is StrategyType.AUTO_LIST:
            bound = f"VALUES ({self.literals(p.values)})" if p.values else "VALUES (DEFAULT)"
        else:
            bound = f"VALUES LESS THAN ({self.literals(p.values) if p.values else 'MAXVALUE'})"
        clause = f"PARTITION {self.ident(p.name)} {bound}"
        if p.tablespace:
            clause += f" TABLESPACE {self.ident(p.tablespace)}"
        return clause

    def _partition_by(self, scheme: PartitionScheme) -> str:
        strategy = scheme.strategy
        col = self.ident(scheme.column) if scheme.column else None
        if strategy is StrategyType.REFERENCE:
            return f"PARTITION BY REFERENCE ({self.ident(scheme.reference_constraint)})"
        if strategy is StrategyType.HASH:
            if scheme.partitions:
                names = ", ".join(f"PARTITION {self.ident(p.name)}" for p in scheme.partitions)
                return f"PARTITION BY HASH ({col}) ({names})"
            return f"PARTITION BY HASH ({col}) PARTITIONS {scheme.hash_partitions}"

        if strategy in (StrategyType.LIST, StrategyType.AUTO_LIST):
            head = f"PARTITION BY LIST ({col})"
            if strategy is StrategyType.AUTO_LIST:
                head += " AUTOMATIC"
            list_kind = StrategyType.LIST
        else:
            # HYBRID is created with internal range partitions only
            head = f"PARTITION BY RANGE ({col})"
            if strategy in (StrategyType.INTERVAL, StrategyType.AUTO_RANGE):
                head += f" INTERVAL ({self._interval(scheme.interval)})"
            list_kind = StrategyType.RANGE

        sub = scheme.subpartition
        if sub is not None:
            head += f" SUBPARTITION BY {sub.strategy.value} ({self.ident(sub.column)})"
            if sub.strategy.value == "HASH":
                head += f" SUBPARTITIONS {sub.count}"

        partitions = scheme.partitions or (PartitionDefinition("P_DEFAULT"),)
        if strategy in (StrategyType.INTERVAL, StrategyType.AUTO_RANGE) and not scheme.partitions:
            # interval tables need a finite transition point; MAXVALUE is rejected
            partitions = (PartitionDefinition("P_INITIAL", (date(2000, 1, 1),)),)
        body = ", ".join(self._partition_clause(p, list_kind) for p in partitions)
        return f"{head} ({body})"

    def _create_table_as(self, s: CreateTableAs) -> List[str]:
        sql = f"CREATE TABLE {self.ident(s.name)} {self._parallel(s.parallel_degree)}"
        if s.tablespace:
            sql += f" TABLESPACE {self.ident(s.tablespace)}"
        sql += f" AS SELECT {self._select_list(s.columns)} FROM {self.ident(s.source)}"
        if s.empty:
            sql += " WHERE 1 = 0"
        return [sql]

    def _create_partitioned_table(self, s: CreatePartitionedTable) -> List[str]:
        sql = f"CREATE TABLE {self.ident(s.name)} {self._parallel(s.parallel_degree)}"
        if s.tablespace:
            sql += f" TABLESPACE {self.ident(s.tablespace)}"
        sql += f" {self._partition_by(s.scheme)}"
        sql += f" AS SELECT {self._select_list(s.columns)} FROM {self.ident(s.source)} WHERE 1 = 0"
        return [sql]

    def _drop_table(self, s: DropTable) -> List[str]:
        return [f"DROP TABLE {self.ident(s.name)}" + (" PURGE" if s.purge else "")]

    def _insert_range(self, s: InsertRange) -> List[str]:
        target = self.ident(s.target)
        hint = f"/*+ PARALLEL({target}, {s.parallel_degree}) */ " if s.parallel_degree > 1 else ""
        cols = f" ({self.idents(s.columns)})" if s.columns else ""
        return [f"INSERT {hint}INTO {target}{cols} SELECT {self._select_list(s.columns)} "
                f"FROM {self.ident(s.source)} WHERE {self._insert_where(s)}"]

    def _select_upper_bound(self, s: SelectUpperBound) -> List[str]:
        key = self.ident(s.key)
        where = f" WHERE {key} > {self.literal(s.lower)}" if s.lower is not None else f" WHERE {key} IS NOT NULL"
        return [f"SELECT MAX({key}) FROM (SELECT {key} FROM {self.ident(s.source)}{where} "
                f"ORDER BY {key} FETCH FIRST {s.batch_size} ROWS ONLY)"]

    def _create_index(self, s: CreateIndex) -> List[str]:
        sql = (f"CREATE {'UNIQUE ' if s.unique else ''}INDEX {self.ident(s.name)} "
               f"ON {self.ident(s.table)} ({self.idents(s.columns)})")
        if s.local:
            sql += " LOCAL"
        if s.tablespace:
            sql += f" TABLESPACE {self.ident(s.tablespace)}"
        return [f"{sql} {self._parallel(s.parallel_degree)}"]

    def _rebuild_index(self, s: RebuildIndex) -> List[str]:
        sql = f"ALTER INDEX {self.ident(s.name)} REBUILD"
        if s.tablespace:
            sql += f" TABLESPACE {self.ident(s.tablespace)}"
        if s.online:
            sql += " ONLINE"
        return [f"{sql} {self._parallel(s.parallel_degree)}"]

    def _gather_statistics(self, s: GatherStatistics) -> List[str]:
        return [
            "BEGIN DBMS_STATS.GATHER_TABLE_STATS("
            f"ownname => USER, tabname => {self.literal(s.table)}, "
            f"estimate_percent => {s.sampling_percent}, degree => {s.parallel_degree}, "
            f"cascade => {'TRUE' if s.cascade else 'FALSE'}); END;"
        ]

    def _move_table(self, s: MoveTable) -> List[str]:
        sql = f"ALTER TABLE {self.ident(s.table)} MOVE"
        if s.online:
            sql += " ONLINE"
        if s.tablespace:
            sql += f" TABLESPACE {self.ident(s.tablespace)}"
        return [f"{sql} {self._parallel(s.parallel_degree)}"]

    def _add_partition(self, s: AddPartition) -> List[str]:
        if s.strategy is StrategyType.HASH:
            return [f"ALTER TABLE {self.ident(s.table)} ADD PARTITION {self.ident(s.partition.name)}"]
        return [f"ALTER TABLE {self.ident(s.table)} ADD {self._partition_clause(s.partition, s.strategy)}"]

    def _drop_partition(self, s: DropPartition) -> List[str]:
        return [f"ALTER TABLE {self.ident(s.table)} DROP PARTITION {self.ident(s.partition)} UPDATE GLOBAL INDEXES"]

    def _truncate_partition(self, s: TruncatePartition) -> List[str]:
        return [f"ALTER TABLE {self.ident(s.table)} TRUNCATE PARTITION {self.ident(s.partition)} UPDATE GLOBAL INDEXES"]

    def _split_partition(self, s: SplitPartition) -> List[str]:
        first, second = s.into
        return [f"ALTER TABLE {self.ident(s.table)} SPLIT PARTITION {self.ident(s.partition)} "
                f"AT ({self.literals(s.at_values)}) INTO (PARTITION {self.ident(first)}, "
                f"PARTITION {self.ident(second)}) UPDATE GLOBAL INDEXES"]

    def _merge_partitions(self, s: MergePartitions) -> List[str]:
        return [f"ALTER TABLE {self.ident(s.table)} MERGE PARTITIONS {self.ident(s.first)}, "
                f"{self.ident(s.second)} INTO PARTITION {self.ident(s.into)} UPDATE GLOBAL INDEXES"]

    def _move_partition(self, s: MovePartition) -> List[str]:
        sql = f"ALTER TABLE {self.ident(s.table)} MOVE PARTITION {self.ident(s.partition)}"
        if s.online:
            sql += " ONLINE"
        return [f"{sql} TABLESPACE {self.ident(s.tablespace)} {self._parallel(s.parallel_degree)} UPDATE INDEXES"]


class PostgresDialect(SqlDialect):
    """Declarative partitioning; no CTAS into partitioned tables, no split/merge."""

    name = "postgresql"
    supported_strategies = frozenset({StrategyType.RANGE, StrategyType.LIST, StrategyType.HASH})

    def __init__(self):
        super().__init__(_SAPGDialect())

    def _create_table_as(self, s: CreateTableAs) -> List[str]:
        sql = f"CREATE TABLE {self.ident(s.name)}"
        if s.tablespace:
            sql += f" TABLESPACE {self.ident(s.tablespace)}"
        sql += f" AS SELECT {self._select_list(s.columns)} FROM {self.ident(s.source)}"
        if s.empty:
            sql += " WITH NO DATA"
        return [sql]

    def _child_name(self, parent: str, partition: str) -> str:
        return self.ident(f"{parent}_{partition}")

    def _bound(self, strategy: StrategyType, p: PartitionDefinition) -> str:
        if strategy is StrategyType.LIST:
            return f"FOR VALUES IN ({self.literals(p.values)})" if p.values else "DEFAULT"
        lower = self.literals(p.lower_values) if p.lower_values else "MINVALUE"
        upper = self.literals(p.values) if p.values else "MAXVALUE"
        return f"FOR VALUES FROM ({lower}) TO ({upper})"

    def _create_partitioned_table(self, s: CreatePartitionedTable) -> List[str]:
        scheme = s.scheme
        if not self.supports(scheme.strategy):
            self._unsupported(f"{scheme.strategy.value} partitioning")
        if scheme.subpartition is not None:
            self._unsupported("Subpartitioning in a single create")
        name = self.ident(s.name)
        if s.columns:
            self._unsupported("Column subset on a partitioned create")
        stmts = [f"CREATE TABLE {name} (LIKE {self.ident(s.source)} INCLUDING DEFAULTS) "
                 f"PARTITION BY {scheme.strategy.value} ({self.ident(scheme.column)})"]
        if scheme.strategy is StrategyType.HASH:
            count = len(scheme.partitions) or scheme.hash_partitions
            names = [p.name for p in scheme.partitions] or [f"P{i}" for i in range(count)]
            for i, pname in enumerate(names):
                stmts.append(f"CREATE TABLE {self._child_name(s.name, pname)} PARTITION OF {name} "
                             f"FOR VALUES WITH (MODULUS {count}, REMAINDER {i})")
            return stmts
        partitions = scheme.partitions or (PartitionDefinition("P_DEFAULT"),)
        previous: tuple = ()
        for p in partitions:
            if scheme.strategy is StrategyType.RANGE and not p.lower_values and previous:
                p = PartitionDefinition(p.name, p.values, previous, p.tablespace)
            stmts.append(f"CREATE TABLE {self._child_name(s.name, p.name)} PARTITION OF {name} "
                         f"{self._bound(scheme.strategy, p)}"
                         + (f" TABLESPACE {self.ident(p.tablespace)}" if p.tablespace else ""))
            previous = p.values
        return stmts

    def _drop_table(self, s: DropTable) -> List[str]:
        return [f"DROP TABLE {self.ident(s.name)}"]

    def _insert_range(self, s: InsertRange) -> List[str]:
        cols = f" ({self.idents(s.columns)})" if s.columns else ""
        return [f"INSERT INTO {self.ident(s.target)}{cols} SELECT {self._select_list(s.columns)} "
                f"FROM {self.ident(s.source)} WHERE {self._insert_where(s)}"]

    def _select_upper_bound(self, s: SelectUpperBound) -> List[str]:
        key = self.ident(s.key)
        where = f" WHERE {key} > {self.literal(s.lower)}" if s.lower is not None else f" WHERE {key} IS NOT NULL"
        return [f"SELECT MAX({key}) FROM (SELECT {key} FROM {self.ident(s.source)}{where} "
                f"ORDER BY {key} LIMIT {s.batch_size}) AS batch"]

    def _create_index(self, s: CreateIndex) -> List[str]:
        sql = (f"CREATE {'UNIQUE ' if s.unique else ''}INDEX {self.ident(s.name)} "
               f"ON {self.ident(s.table)} ({self.idents(s.columns)})")
        if s.tablespace:
            sql += f" TABLESPACE {self.ident(s.tablespace)}"
        return [sql]

    def _rebuild_index(self, s: RebuildIndex) -> List[str]:
        stmts = []
        if s.tablespace:
            stmts.append(f"ALTER INDEX {self.ident(s.name)} SET TABLESPACE {self.ident(s.tablespace)}")
        stmts.append(f"REINDEX INDEX {self.ident(s.name)}")
        return stmts

    def _gather_statistics(self, s: GatherStatistics) -> List[str]:
        return [f"ANALYZE {self.ident(s.table)}"]

    def _move_table(self, s: MoveTable) -> List[str]:
        if not s.tablespace:
            self._unsupported("In-place table move")
        return [f"ALTER TABLE {self.ident(s.table)} SET TABLESPACE {self.ident(s.tablespace)}"]

    def _add_partition(self, s: AddPartition) -> List[str]:
        if not self.supports(s.strategy) or s.strategy is StrategyType.HASH:
            self._unsupported(f"Adding a {s.strategy.value} partition")
        return [f"CREATE TABLE {self._child_name(s.table, s.partition.name)} PARTITION OF "
                f"{self.ident(s.table)} {self._bound(s.strategy, s.partition)}"]

    def _drop_partition(self, s: DropPartition) -> List[str]:
        child = self._child_name(s.table, s.partition)
        return [f"ALTER TABLE {self.ident(s.table)} DETACH PARTITION {child}", f"DROP TABLE {child}"]

    def _truncate_partition(self, s: TruncatePartition) -> List[str]:
        return [f"TRUNCATE TABLE {self._child_name(s.table, s.partition)}"]

    def _split_partition(self, s: SplitPartition) -> List[str]:
        self._unsupported("SPLIT PARTITION")

    def _merge_partitions(self, s: MergePartitions) -> List[str]:
        self._unsupported("MERGE PARTITIONS")

    def _move_partition(self, s: MovePartition) -> List[str]:
        return [f"ALTER TABLE {self._child_name(s.table, s.partition)} SET TABLESPACE {self.ident(s.tablespace)}"]


_DIALECTS = {
    "oracle": OracleDialect,
    "postgresql": PostgresDialect,
}


def get_dialect(name: str) -> SqlDialect:
    try:
        return _DIALECTS[name.lower()]()
    except KeyError:
        raise UnsupportedOperationError(f"Unsupported SQL dialect {name!r}; expected one of {sorted(_DIALECTS)}") from None
