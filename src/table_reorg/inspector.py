"""Read-only catalog inspection.

Provides the current physical state of a table: existence, partitioning, columns,
dependent indexes and constraints, approximate size. Nothing is cached; every call
goes back to the catalog.
"""
from __future__ import annotations
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional, Protocol, Tuple

from prometheus_client import Counter
from sqlalchemy import inspect as sa_inspect, text
from sqlalchemy.engine import Engine

from table_reorg.errors import ValidationError
from table_reorg.statements import ConstraintKind, check_identifier

logger = logging.getLogger(__name__)

INSPECTION_FAILURES = Counter('reorg_inspection_failures_total', 'Catalog inspections that failed and reported a missing object')


@dataclass(frozen=True)
class ColumnInfo:
    name: str
    type_name: str = ""
    nullable: bool = True


@dataclass(frozen=True)
class IndexInfo:
    name: str
    columns: Tuple[str, ...]
    unique: bool = False


@dataclass(frozen=True)
class ConstraintInfo:
    name: str
    kind: ConstraintKind
    columns: Tuple[str, ...]
    referred_table: Optional[str] = None
    referred_columns: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PartitionBound:
    """Partition name and the date its range ends at (exclusive); None for MAXVALUE, LIST or non-date bounds."""
    name: str
    upper: Optional[date] = None


@dataclass(frozen=True)
class ObjectState:
    name: str
    exists: bool
    is_structured: bool = False
    structure_kind: Optional[str] = None  # RANGE|LIST|HASH|INTERVAL|REFERENCE|... when partitioned
    columns: Tuple[ColumnInfo, ...] = ()
    approx_size_bytes: int = 0
    primary_key: Tuple[str, ...] = ()
    indexes: Tuple[IndexInfo, ...] = ()
    constraints: Tuple[ConstraintInfo, ...] = ()
    partitions: Tuple[str, ...] = field(default=())
    partition_bounds: Tuple[PartitionBound, ...] = ()

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]

    def has_column(self, name: str) -> bool:
        return name.upper() in self.column_names

    def constraint(self, name: str) -> Optional[ConstraintInfo]:
        for c in self.constraints:
            if c.name == name.upper():
                return c
        return None


class Catalog(Protocol):
    """Catalog queries; names are upper case on input and output."""

    def table_exists(self, name: str) -> bool: ...

    def columns(self, name: str) -> List[ColumnInfo]: ...

    def indexes(self, name: str) -> List[IndexInfo]: ...

    def constraints(self, name: str) -> List[ConstraintInfo]: ...

    def partitioning(self, name: str) -> Optional[str]: ...

    def partitions(self, name: str) -> List[str]: ...

    def partition_bounds(self, name: str) -> List[PartitionBound]: ...

    def size_bytes(self, name: str) -> int: ...


_PG_STRATEGIES = {"r": "RANGE", "l": "LIST", "h": "HASH"}
_BOUND_DATE = re.compile(r"(\d{4})-(\d{2})-(\d{2})")


def parse_upper_bound(expression: Optional[str]) -> Optional[date]:
    """Last date literal in a catalog bound expression.

    Oracle reports ``TO_DATE(' 2024-01-01 00:00:00', ...)``, PostgreSQL
    ``FOR VALUES FROM ('2023-01-01') TO ('2024-01-01')``; both end with the upper bound.
    """
    if not expression:
        return None
    found = _BOUND_DATE.findall(expression)
    if not found:
        return None
    y, m, d = found[-1]
    try:
        return date(int(y), int(m), int(d))
    except ValueError:
        return None


class SqlAlchemyCatalog:
    """Catalog backed by ``sqlalchemy.inspect`` plus dialect-specific partition and size queries."""

    def __init__(self, engine: Engine, dialect_name: Optional[str] = None):
        self.engine = engine
        self.dialect_name = (dialect_name or engine.dialect.name).lower()

    def _inspector(self):
        # fresh inspector each call: its reflection cache would hide concurrent DDL
        return sa_inspect(self.engine)

    def table_exists(self, name: str) -> bool:
        return self._inspector().has_table(name.lower())

    def columns(self, name: str) -> List[ColumnInfo]:
        return [
            ColumnInfo(c["name"].upper(), str(c["type"]), bool(c.get("nullable", True)))
            for c in self._inspector().get_columns(name.lower())
        ]

    def indexes(self, name: str) -> List[IndexInfo]:
        out = []
        for ix in self._inspector().get_indexes(name.lower()):
            if ix.get("duplicates_constraint") or not ix.get("name"):
                continue
            cols = tuple(c.upper() for c in ix.get("column_names") or () if c)
            if cols:
                out.append(IndexInfo(ix["name"].upper(), cols, bool(ix.get("unique"))))
        return out

    def constraints(self, name: str) -> List[ConstraintInfo]:
        insp = self._inspector()
        table = name.lower()
        out: List[ConstraintInfo] = []
        pk = insp.get_pk_constraint(table) or {}
        if pk.get("constrained_columns"):
            out.append(ConstraintInfo(
                (pk.get("name") or f"{name}_PK").upper(), ConstraintKind.PRIMARY_KEY,
                tuple(c.upper() for c in pk["constrained_columns"]),
            ))
        for uq in insp.get_unique_constraints(table):
            if uq.get("name"):
                out.append(ConstraintInfo(uq["name"].upper(), ConstraintKind.UNIQUE,
                                          tuple(c.upper() for c in uq["column_names"])))
        for fk in insp.get_foreign_keys(table):
            if fk.get("name"):
                out.append(ConstraintInfo(
                    fk["name"].upper(), ConstraintKind.FOREIGN_KEY,
                    tuple(c.upper() for c in fk["constrained_columns"]),
                    fk["referred_table"].upper(),
                    tuple(c.upper() for c in fk.get("referred_columns") or ()),
                ))
        return out

    def partitioning(self, name: str) -> Optional[str]:
        with self.engine.connect() as conn:
            if self.dialect_name == "postgresql":
                strat = conn.execute(text(
                    "SELECT p.partstrat FROM pg_partitioned_table p "
                    "JOIN pg_class c ON c.oid = p.partrelid WHERE c.relname = :name"
                ), {"name": name.lower()}).scalar()
                return _PG_STRATEGIES.get(strat) if strat else None
            if self.dialect_name == "oracle":
                row = conn.execute(text(
                    "SELECT partitioning_type, interval FROM user_part_tables WHERE table_name = :name"
                ), {"name": name.upper()}).first()
                if row is None:
                    return None
                return "INTERVAL" if row[1] else row[0]
        return None

    def partitions(self, name: str) -> List[str]:
        with self.engine.connect() as conn:
            if self.dialect_name == "postgresql":
                rows = conn.execute(text(
                    "SELECT c.relname FROM pg_inherits i JOIN pg_class c ON c.oid = i.inhrelid "
                    "JOIN pg_class p ON p.oid = i.inhparent WHERE p.relname = :name ORDER BY c.relname"
                ), {"name": name.lower()})
                return [r[0].upper() for r in rows]
            if self.dialect_name == "oracle":
                rows = conn.execute(text(
                    "SELECT partition_name FROM user_tab_partitions WHERE table_name = :name "
                    "ORDER BY partition_position"
                ), {"name": name.upper()})
                return [r[0] for r in rows]
        return []

    def partition_bounds(self, name: str) -> List[PartitionBound]:
        with self.engine.connect() as conn:
            if self.dialect_name == "postgresql":
                rows = conn.execute(text(
                    "SELECT c.relname, pg_get_expr(c.relpartbound, c.oid) FROM pg_inherits i "
                    "JOIN pg_class c ON c.oid = i.inhrelid JOIN pg_class p ON p.oid = i.inhparent "
                    "WHERE p.relname = :name ORDER BY c.relname"
                ), {"name": name.lower()})
                return [PartitionBound(r[0].upper(), parse_upper_bound(r[1])) for r in rows]
            if self.dialect_name == "oracle":
                rows = conn.execute(text(
                    "SELECT partition_name, high_value FROM user_tab_partitions WHERE table_name = :name "
                    "ORDER BY partition_position"
                ), {"name": name.upper()})
                return [PartitionBound(r[0], parse_upper_bound(r[1])) for r in rows]
        return []

    def size_bytes(self, name: str) -> int:
        with self.engine.connect() as conn:
            if self.dialect_name == "postgresql":
                return int(conn.execute(text("SELECT pg_total_relation_size(CAST(:name AS regclass))"),
                                        {"name": name.lower()}).scalar() or 0)
            if self.dialect_name == "oracle":
                return int(conn.execute(text("SELECT NVL(SUM(bytes), 0) FROM user_segments WHERE segment_name = :name"),
                                        {"name": name.upper()}).scalar() or 0)
        return 0


class ObjectInspector:
    """Never raises: an unreadable or absent object is reported with ``exists=False``."""

    def __init__(self, catalog: Catalog):
        self.catalog = catalog

    def inspect(self, name: str) -> ObjectState:
        try:
            normalized = check_identifier(name)
        except ValidationError:
            return ObjectState(name=str(name), exists=False)
        try:
            if not self.catalog.table_exists(normalized):
                return ObjectState(name=normalized, exists=False)
            columns = tuple(self.catalog.columns(normalized))
            constraints = tuple(self.catalog.constraints(normalized))
            constraint_names = {c.name for c in constraints}
            indexes = tuple(ix for ix in self.catalog.indexes(normalized) if ix.name not in constraint_names)
            kind = self.catalog.partitioning(normalized)
            partitions = tuple(self.catalog.partitions(normalized)) if kind else ()
            bounds = tuple(self.catalog.partition_bounds(normalized)) if kind else ()
            size = self.catalog.size_bytes(normalized)
        except Exception as e:
            INSPECTION_FAILURES.inc()
            logger.warning(f"Catalog inspection of {normalized} failed: {e}")
            return ObjectState(name=normalized, exists=False)
        pk: Tuple[str, ...] = ()
        for c in constraints:
            if c.kind is ConstraintKind.PRIMARY_KEY:
                pk = c.columns
        return ObjectState(
            name=normalized,
            exists=True,
            is_structured=kind is not None,
            structure_kind=kind,
            columns=columns,
            approx_size_bytes=max(0, int(size or 0)),
            primary_key=pk,
            indexes=indexes,
            constraints=constraints,
            partitions=partitions,
            partition_bounds=bounds,
        )
