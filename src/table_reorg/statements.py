"""Typed DDL/DML statements emitted by reorganization plans.

Every structural operation is a frozen dataclass; dialect renderers in
``table_reorg.dialects`` turn them into SQL text. Identifiers are validated here,
at construction, so an invalid name never reaches a renderer.
"""
from __future__ import annotations
import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Tuple, Union
from uuid import UUID

from table_reorg.errors import ValidationError

IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_$#]*$")
MAX_IDENTIFIER_LENGTH = 128


class StrategyType(Enum):
    RANGE = "RANGE"
    LIST = "LIST"
    HASH = "HASH"
    INTERVAL = "INTERVAL"
    REFERENCE = "REFERENCE"
    AUTO_LIST = "AUTO_LIST"
    AUTO_RANGE = "AUTO_RANGE"
    HYBRID = "HYBRID"
    NONE = "NONE"

    @classmethod
    def parse(cls, value: Union[str, "StrategyType"]) -> "StrategyType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            allowed = ", ".join(s.value for s in cls)
            raise ValidationError(f"Invalid strategy type {value!r}; allowed: {allowed}") from None


class SubpartitionType(Enum):
    RANGE = "RANGE"
    LIST = "LIST"
    HASH = "HASH"


def check_identifier(name: str) -> str:
    """Validate a table/column/index/partition/tablespace name and return it upper-cased."""
    if not isinstance(name, str) or not name:
        raise ValidationError("Identifier must be a non-empty string")
    if len(name) > MAX_IDENTIFIER_LENGTH or not IDENTIFIER_RE.match(name):
        raise ValidationError(f"Invalid identifier {name!r}")
    return name.upper()


def _check_optional(name: Optional[str]) -> Optional[str]:
    return check_identifier(name) if name is not None else None


def _check_all(names) -> Tuple[str, ...]:
    return tuple(check_identifier(n) for n in names)


def _check_literal(value: Any):
    if value is None or isinstance(value, (bool, int, float, Decimal, str, bytes, UUID, date, datetime)):
        return value
    raise ValidationError(f"Unsupported literal value {value!r} ({type(value).__name__})")


_INTERVAL_RE = re.compile(
    r"^\s*(?:NUMTO(?:YM|DS)INTERVAL\s*\(\s*(\d+)\s*,\s*'(\w+)'\s*\)|(\d+)\s+(\w+?)S?)\s*$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class IntervalSpec:
    amount: int
    unit: str  # YEAR|MONTH|DAY|HOUR|MINUTE

    UNITS = ("YEAR", "MONTH", "DAY", "HOUR", "MINUTE")

    def __post_init__(self):
        if self.amount < 1:
            raise ValidationError(f"Interval amount must be positive, got {self.amount}")
        if self.unit not in self.UNITS:
            raise ValidationError(f"Unsupported interval unit {self.unit!r}")

    @classmethod
    def parse(cls, expression: str) -> "IntervalSpec":
        """Accepts '1 MONTH', '7 days' or NUMTOYMINTERVAL(1,'MONTH') style expressions."""
        m = _INTERVAL_RE.match(expression or "")
        if not m:
            raise ValidationError(f"Unrecognized interval expression {expression!r}")
        amount = m.group(1) or m.group(3)
        unit = (m.group(2) or m.group(4)).upper()
        if unit.endswith("S") and unit[:-1] in cls.UNITS:
            unit = unit[:-1]
        return cls(int(amount), unit)

    def __str__(self) -> str:
        return f"{self.amount} {self.unit}"


@dataclass(frozen=True)
class PartitionDefinition:
    """One named partition. Empty ``values`` means MAXVALUE (range) or DEFAULT (list)."""
    name: str
    values: Tuple[Any, ...] = ()
    lower_values: Tuple[Any, ...] = ()  # range lower bound, needed by engines with FROM/TO syntax
    tablespace: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "name", check_identifier(self.name))
        object.__setattr__(self, "values", tuple(_check_literal(v) for v in self.values))
        object.__setattr__(self, "lower_values", tuple(_check_literal(v) for v in self.lower_values))
        object.__setattr__(self, "tablespace", _check_optional(self.tablespace))


@dataclass(frozen=True)
class SubpartitionScheme:
    strategy: SubpartitionType
    column: str
    count: int = 4

    def __post_init__(self):
        object.__setattr__(self, "column", check_identifier(self.column))
        if self.count < 1:
            raise ValidationError("Subpartition count must be at least 1")


@dataclass(frozen=True)
class PartitionScheme:
    strategy: StrategyType
    column: Optional[str] = None
    interval: Optional[IntervalSpec] = None
    reference_constraint: Optional[str] = None
    partitions: Tuple[PartitionDefinition, ...] = ()
    hash_partitions: int = 4
    subpartition: Optional[SubpartitionScheme] = None

    def __post_init__(self):
        object.__setattr__(self, "column", _check_optional(self.column))
        object.__setattr__(self, "reference_constraint", _check_optional(self.reference_constraint))
        object.__setattr__(self, "partitions", tuple(self.partitions))
        if self.strategy is StrategyType.NONE:
            raise ValidationError("A partition scheme needs a partitioning strategy")
        if self.strategy is StrategyType.REFERENCE:
            if not self.reference_constraint:
                raise ValidationError("REFERENCE partitioning requires a foreign key constraint name")
        elif not self.column:
            raise ValidationError(f"{self.strategy.value} partitioning requires a partition column")
        if self.strategy in (StrategyType.INTERVAL, StrategyType.AUTO_RANGE) and self.interval is None:
            raise ValidationError(f"{self.strategy.value} partitioning requires an interval expression")
        if self.hash_partitions < 1:
            raise ValidationError("Hash partition count must be at least 1")


# --- statements ---------------------------------------------------------------

@dataclass(frozen=True)
class CreateTableAs:
    """Copy ``source`` into a new table; ``empty`` copies the shape only."""
    name: str
    source: str
    columns: Optional[Tuple[str, ...]] = None
    empty: bool = False
    parallel_degree: int = 1
    tablespace: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "name", check_identifier(self.name))
        object.__setattr__(self, "source", check_identifier(self.source))
        if self.columns is not None:
            object.__setattr__(self, "columns", _check_all(self.columns))
        object.__setattr__(self, "tablespace", _check_optional(self.tablespace))


@dataclass(frozen=True)
class CreatePartitionedTable:
    """Schema-only copy of ``source`` carrying a partition definition; zero rows."""
    name: str
    source: str
    scheme: PartitionScheme
    parallel_degree: int = 1
    columns: Optional[Tuple[str, ...]] = None
    tablespace: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "name", check_identifier(self.name))
        object.__setattr__(self, "source", check_identifier(self.source))
        if self.columns is not None:
            object.__setattr__(self, "columns", _check_all(self.columns))
        object.__setattr__(self, "tablespace", _check_optional(self.tablespace))


@dataclass(frozen=True)
class DropTable:
    name: str
    purge: bool = False

    def __post_init__(self):
        object.__setattr__(self, "name", check_identifier(self.name))


@dataclass(frozen=True)
class InsertRange:
    """Move rows whose ``key`` lies in (lower, upper]. ``nulls_only`` moves rows with a NULL key."""
    target: str
    source: str
    key: str
    lower: Any = None
    upper: Any = None
    nulls_only: bool = False
    columns: Optional[Tuple[str, ...]] = None
    parallel_degree: int = 1

    def __post_init__(self):
        object.__setattr__(self, "target", check_identifier(self.target))
        object.__setattr__(self, "source", check_identifier(self.source))
        object.__setattr__(self, "key", check_identifier(self.key))
        object.__setattr__(self, "lower", _check_literal(self.lower))
        object.__setattr__(self, "upper", _check_literal(self.upper))
        if self.columns is not None:
            object.__setattr__(self, "columns", _check_all(self.columns))


@dataclass(frozen=True)
class SelectUpperBound:
    """Largest ``key`` among the next ``batch_size`` rows above ``lower``; NULL when none remain."""
    source: str
    key: str
    batch_size: int
    lower: Any = None

    def __post_init__(self):
        object.__setattr__(self, "source", check_identifier(self.source))
        object.__setattr__(self, "key", check_identifier(self.key))
        object.__setattr__(self, "lower", _check_literal(self.lower))
        if self.batch_size < 1:
            raise ValidationError("Batch size must be positive")


@dataclass(frozen=True)
class CreateIndex:
    name: str
    table: str
    columns: Tuple[str, ...]
    unique: bool = False
    local: bool = False
    parallel_degree: int = 1
    tablespace: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "name", check_identifier(self.name))
        object.__setattr__(self, "table", check_identifier(self.table))
        object.__setattr__(self, "columns", _check_all(self.columns))
        object.__setattr__(self, "tablespace", _check_optional(self.tablespace))
        if not self.columns:
            raise ValidationError(f"Index {self.name} has no columns")


class ConstraintKind(Enum):
    PRIMARY_KEY = "PRIMARY KEY"
    UNIQUE = "UNIQUE"
    FOREIGN_KEY = "FOREIGN KEY"


@dataclass(frozen=True)
class AddConstraint:
    table: str
    name: str
    kind: ConstraintKind
    columns: Tuple[str, ...]
    referred_table: Optional[str] = None
    referred_columns: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "table", check_identifier(self.table))
        object.__setattr__(self, "name", check_identifier(self.name))
        object.__setattr__(self, "columns", _check_all(self.columns))
        object.__setattr__(self, "referred_table", _check_optional(self.referred_table))
        object.__setattr__(self, "referred_columns", _check_all(self.referred_columns))
        if self.kind is ConstraintKind.FOREIGN_KEY and not self.referred_table:
            raise ValidationError(f"Foreign key {self.name} needs a referred table")


@dataclass(frozen=True)
class RebuildIndex:
    name: str
    parallel_degree: int = 1
    tablespace: Optional[str] = None
    online: bool = True

    def __post_init__(self):
        object.__setattr__(self, "name", check_identifier(self.name))
        object.__setattr__(self, "tablespace", _check_optional(self.tablespace))


@dataclass(frozen=True)
class GatherStatistics:
    table: str
    sampling_percent: int = 10
    parallel_degree: int = 1
    cascade: bool = True

    def __post_init__(self):
        object.__setattr__(self, "table", check_identifier(self.table))
        if not 0 < self.sampling_percent <= 100:
            raise ValidationError(f"Sampling percent out of range: {self.sampling_percent}")


@dataclass(frozen=True)
class MoveTable:
    table: str
    tablespace: Optional[str] = None
    parallel_degree: int = 1
    online: bool = True

    def __post_init__(self):
        object.__setattr__(self, "table", check_identifier(self.table))
        object.__setattr__(self, "tablespace", _check_optional(self.tablespace))


@dataclass(frozen=True)
class AddPartition:
    table: str
    partition: PartitionDefinition
    strategy: StrategyType = StrategyType.RANGE

    def __post_init__(self):
        object.__setattr__(self, "table", check_identifier(self.table))


@dataclass(frozen=True)
class DropPartition:
    table: str
    partition: str

    def __post_init__(self):
        object.__setattr__(self, "table", check_identifier(self.table))
        object.__setattr__(self, "partition", check_identifier(self.partition))


@dataclass(frozen=True)
class TruncatePartition:
    """Remove every row of one partition, keeping the partition itself."""
    table: str
    partition: str

    def __post_init__(self):
        object.__setattr__(self, "table", check_identifier(self.table))
        object.__setattr__(self, "partition", check_identifier(self.partition))


@dataclass(frozen=True)
class SplitPartition:
    table: str
    partition: str
    at_values: Tuple[Any, ...]
    into: Tuple[str, str]

    def __post_init__(self):
        object.__setattr__(self, "table", check_identifier(self.table))
        object.__setattr__(self, "partition", check_identifier(self.partition))
        object.__setattr__(self, "at_values", tuple(_check_literal(v) for v in self.at_values))
        object.__setattr__(self, "into", _check_all(self.into))
        if len(self.into) != 2 or not self.at_values:
            raise ValidationError("Split needs a split point and exactly two resulting partitions")


@dataclass(frozen=True)
class MergePartitions:
    table: str
    first: str
    second: str
    into: str

    def __post_init__(self):
        object.__setattr__(self, "table", check_identifier(self.table))
        object.__setattr__(self, "first", check_identifier(self.first))
        object.__setattr__(self, "second", check_identifier(self.second))
        object.__setattr__(self, "into", check_identifier(self.into))


@dataclass(frozen=True)
class MovePartition:
    table: str
    partition: str
    tablespace: str
    parallel_degree: int = 1
    online: bool = True

    def __post_init__(self):
        object.__setattr__(self, "table", check_identifier(self.table))
        object.__setattr__(self, "partition", check_identifier(self.partition))
        object.__setattr__(self, "tablespace", check_identifier(self.tablespace))


Statement = Union[
    CreateTableAs, CreatePartitionedTable, DropTable, InsertRange, SelectUpperBound,
    CreateIndex, AddConstraint, RebuildIndex, GatherStatistics, MoveTable,
    AddPartition, DropPartition, TruncatePartition, SplitPartition, MergePartitions, MovePartition,
]

PARTITION_CHANGES = (AddPartition, DropPartition, TruncatePartition, SplitPartition, MergePartitions, MovePartition)
