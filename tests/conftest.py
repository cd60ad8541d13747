"""Shared fixtures: SQLite-backed admin tables and an in-memory target engine.

The in-memory engine (FakeDatabase / FakeCatalog / FakeExecutor) interprets the
typed statements directly, so plans can be executed end to end without Oracle or
PostgreSQL while still being rendered through the real dialect.
"""
import re
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from table_reorg.audit import AuditLog, AuditLogConfig
from table_reorg.config_store import StrategyConfigStore
from table_reorg.dialects import OracleDialect
from table_reorg.driver import ObjectLockRegistry
from table_reorg.errors import ConstraintViolation, StatementError
from table_reorg.infrastructure.db import Base
from table_reorg.inspector import ConstraintInfo, IndexInfo, ObjectInspector, PartitionBound
from table_reorg.models import tables  # noqa: F401
from table_reorg.statements import (
    AddConstraint, AddPartition, ConstraintKind, CreateIndex, CreatePartitionedTable,
    CreateTableAs, DropPartition, DropTable, GatherStatistics, InsertRange, MergePartitions,
    MovePartition, MoveTable, RebuildIndex, SelectUpperBound, SplitPartition, TruncatePartition,
)

MB = 1024 * 1024
_TIMESTAMP_LITERAL = re.compile(r"^TIMESTAMP(?: WITH TIME ZONE)? '(.+)'$")


# ============================================================
# IN-MEMORY TARGET ENGINE
# ============================================================

class FakeTable:
    def __init__(self, name, columns, rows=(), primary_key=(), indexes=(), constraints=(),
                 size_bytes=0, partitioning=None, partitions=(), partition_bounds=None):
        self.name = name
        self.columns = list(columns)
        self.rows = [dict(r) for r in rows]
        self.primary_key = tuple(primary_key)
        self.indexes = list(indexes)
        self.constraints = list(constraints)
        self.size_bytes = size_bytes
        self.partitioning = partitioning
        self.partitions = list(partitions)
        self.partition_bounds = dict(partition_bounds or {})
        self.truncated_partitions: List[str] = []
        self.tablespace = None


class FakeDatabase:
    def __init__(self):
        self.tables: Dict[str, FakeTable] = {}
        self.stats_gathered: List[str] = []
        self.rebuilt_indexes: List[str] = []

    def create_table(self, name, columns, rows=(), primary_key=(), **kwargs) -> FakeTable:
        constraints = list(kwargs.pop("constraints", ()))
        if primary_key:
            constraints.insert(0, ConstraintInfo(f"{name}_PK", ConstraintKind.PRIMARY_KEY, tuple(primary_key)))
        table = FakeTable(name, columns, rows, primary_key, constraints=constraints, **kwargs)
        self.tables[name] = table
        return table

    def count(self, name) -> int:
        return len(self.tables[name].rows)


class FakeCatalog:
    def __init__(self, db: FakeDatabase):
        self.db = db
        self.calls = 0
        self.broken = False

    def _table(self, name) -> FakeTable:
        self.calls += 1
        if self.broken:
            raise RuntimeError("catalog unavailable")
        return self.db.tables[name]

    def table_exists(self, name):
        self.calls += 1
        if self.broken:
            raise RuntimeError("catalog unavailable")
        return name in self.db.tables

    def columns(self, name):
        from table_reorg.inspector import ColumnInfo
        return [ColumnInfo(c) for c in self._table(name).columns]

    def indexes(self, name):
        return list(self._table(name).indexes)

    def constraints(self, name):
        return list(self._table(name).constraints)

    def partitioning(self, name):
        return self._table(name).partitioning

    def partitions(self, name):
        return list(self._table(name).partitions)

    def partition_bounds(self, name):
        table = self._table(name)
        return [PartitionBound(p, table.partition_bounds.get(p)) for p in table.partitions]

    def size_bytes(self, name):
        return self._table(name).size_bytes


class FakeExecutor:
    """Applies typed statements to a FakeDatabase.

    ``fail_on(stmt)`` returning True makes that statement raise a StatementError;
    ``reject(row)`` returning True makes an InsertRange containing the row raise a
    ConstraintViolation before anything is inserted. With ``literal_roundtrip`` the
    watermark bounds are compared as the engine would see them: rendered to SQL
    literals and parsed back.
    """

    def __init__(self, db: FakeDatabase, fail_on: Optional[Callable] = None, reject: Optional[Callable] = None,
                 literal_roundtrip: bool = False, max_upper_bound_queries: int = 10_000):
        self.db = db
        self.literal_roundtrip = literal_roundtrip
        self.max_upper_bound_queries = max_upper_bound_queries
        self.upper_bound_queries = 0
        self.dialect = OracleDialect()
        self.fail_on = fail_on
        self.reject = reject
        self.executed: List[object] = []
        self.commits = 0
        self.rollbacks = 0
        self.savepoints = 0

    def render(self, stmt):
        return self.dialect.render(stmt)

    @contextmanager
    def savepoint(self):
        self.savepoints += 1
        yield

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1

    def _missing(self, name):
        raise StatementError(f"ORA-00942: table or view {name} does not exist", error_code="ORA-00942")

    def _get(self, name) -> FakeTable:
        if name not in self.db.tables:
            self._missing(name)
        return self.db.tables[name]

    def _as_sent(self, value):
        if not self.literal_roundtrip or value is None:
            return value
        m = _TIMESTAMP_LITERAL.match(self.dialect.literal(value))
        if m is None:
            return value
        return datetime.fromisoformat(m.group(1).replace(" +", "+").replace(" -", "-"))

    def _check(self, stmt):
        self.executed.append(stmt)
        if self.fail_on is not None and self.fail_on(stmt):
            raise StatementError("ORA-01652: unable to extend temp segment",
                                 sql_text=self.render(stmt)[0], error_code="ORA-01652")

    def scalar(self, stmt):
        self._check(stmt)
        if isinstance(stmt, SelectUpperBound):
            self.upper_bound_queries += 1
            if self.upper_bound_queries > self.max_upper_bound_queries:
                raise AssertionError(f"loader did not terminate after {self.max_upper_bound_queries} upper-bound queries")
            src = self._get(stmt.source)
            lower = self._as_sent(stmt.lower)
            keys = sorted(r[stmt.key] for r in src.rows
                          if r.get(stmt.key) is not None and (lower is None or r[stmt.key] > lower))
            batch = keys[: stmt.batch_size]
            return batch[-1] if batch else None
        raise AssertionError(f"unexpected scalar statement {stmt!r}")

    def execute(self, stmt) -> int:
        self._check(stmt)
        if isinstance(stmt, CreateTableAs):
            if stmt.name in self.db.tables:
                raise StatementError(f"ORA-00955: name {stmt.name} is already used", error_code="ORA-00955")
            src = self._get(stmt.source)
            cols = list(stmt.columns or src.columns)
            rows = [] if stmt.empty else [{c: r.get(c) for c in cols} for r in src.rows]
            self.db.tables[stmt.name] = FakeTable(stmt.name, cols, rows, size_bytes=0 if stmt.empty else src.size_bytes)
            return len(rows)
        if isinstance(stmt, CreatePartitionedTable):
            if stmt.name in self.db.tables:
                raise StatementError(f"ORA-00955: name {stmt.name} is already used", error_code="ORA-00955")
            src = self._get(stmt.source)
            cols = list(stmt.columns or src.columns)
            parts = [p.name for p in stmt.scheme.partitions] or ["P_DEFAULT"]
            self.db.tables[stmt.name] = FakeTable(stmt.name, cols, partitioning=stmt.scheme.strategy.value,
                                                  partitions=parts)
            return 0
        if isinstance(stmt, DropTable):
            self._get(stmt.name)
            del self.db.tables[stmt.name]
            return 0
        if isinstance(stmt, InsertRange):
            src, dst = self._get(stmt.source), self._get(stmt.target)
            cols = list(stmt.columns or dst.columns)

            lower, upper = self._as_sent(stmt.lower), self._as_sent(stmt.upper)

            def selected(r):
                k = r.get(stmt.key)
                if stmt.nulls_only:
                    return k is None
                return k is not None and (lower is None or k > lower) and (upper is None or k <= upper)

            batch = [{c: r.get(c) for c in cols} for r in src.rows if selected(r)]
            if self.reject is not None and any(self.reject(r) for r in batch):
                raise ConstraintViolation("ORA-00001: unique constraint violated",
                                          sql_text=self.render(stmt)[0], error_code="ORA-00001")
            dst.rows.extend(batch)
            return len(batch)
        if isinstance(stmt, CreateIndex):
            self._get(stmt.table).indexes.append(IndexInfo(stmt.name, stmt.columns, stmt.unique))
            return 0
        if isinstance(stmt, AddConstraint):
            table = self._get(stmt.table)
            table.constraints.append(ConstraintInfo(stmt.name, stmt.kind, stmt.columns,
                                                    stmt.referred_table, stmt.referred_columns))
            if stmt.kind is ConstraintKind.PRIMARY_KEY:
                table.primary_key = stmt.columns
            return 0
        if isinstance(stmt, GatherStatistics):
            self._get(stmt.table)
            self.db.stats_gathered.append(stmt.table)
            return 0
        if isinstance(stmt, MoveTable):
            self._get(stmt.table).tablespace = stmt.tablespace
            return 0
        if isinstance(stmt, RebuildIndex):
            self.db.rebuilt_indexes.append(stmt.name)
            return 0
        if isinstance(stmt, AddPartition):
            self._get(stmt.table).partitions.append(stmt.partition.name)
            return 0
        if isinstance(stmt, DropPartition):
            self._get(stmt.table).partitions.remove(stmt.partition)
            return 0
        if isinstance(stmt, TruncatePartition):
            table = self._get(stmt.table)
            if stmt.partition not in table.partitions:
                raise StatementError(f"ORA-02149: partition {stmt.partition} does not exist", error_code="ORA-02149")
            table.truncated_partitions.append(stmt.partition)
            return 0
        if isinstance(stmt, SplitPartition):
            parts = self._get(stmt.table).partitions
            i = parts.index(stmt.partition)
            parts[i:i + 1] = list(stmt.into)
            return 0
        if isinstance(stmt, MergePartitions):
            parts = self._get(stmt.table).partitions
            i = parts.index(stmt.first)
            parts.remove(stmt.first)
            parts.remove(stmt.second)
            parts.insert(i, stmt.into)
            return 0
        if isinstance(stmt, MovePartition):
            self._get(stmt.table)
            return 0
        raise AssertionError(f"unexpected statement {stmt!r}")


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def engine():
    """In-memory SQLite holding strategy_config, operation_log and maintenance_jobs."""
    e = create_engine("sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False})
    Base.metadata.create_all(e)
    yield e
    e.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def audit(session_factory):
    return AuditLog(session_factory, AuditLogConfig(enabled=True, retention_days=90))


@pytest.fixture
def config_store(session_factory):
    return StrategyConfigStore(session_factory)


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def catalog(fake_db):
    return FakeCatalog(fake_db)


@pytest.fixture
def inspector(catalog):
    return ObjectInspector(catalog)


@pytest.fixture
def executor(fake_db):
    return FakeExecutor(fake_db)


@pytest.fixture
def make_executor(fake_db):
    """FakeExecutor with failure injection: ``make_executor(fail_on=..., reject=...)``."""
    def _make(**kwargs):
        return FakeExecutor(fake_db, **kwargs)
    return _make


@pytest.fixture
def locks():
    return ObjectLockRegistry()


@pytest.fixture
def sales(fake_db):
    """SALES: 50,000 MB, not partitioned, 250 rows, primary key on SALE_ID."""
    rows = [
        {"SALE_ID": i, "SALE_DATE": f"2024-{(i % 12) + 1:02d}-01", "AMOUNT": i * 10, "REGION": "EU" if i % 2 else "US"}
        for i in range(1, 251)
    ]
    return fake_db.create_table(
        "SALES", ["SALE_ID", "SALE_DATE", "AMOUNT", "REGION"], rows,
        primary_key=("SALE_ID",), size_bytes=50_000 * MB,
    )


@pytest.fixture
def make_service(fake_db, catalog, audit, config_store, locks):
    """Build a MigrationService over the in-memory engine; other kwargs go to FakeExecutor."""
    from table_reorg.config import Settings
    from table_reorg.service import MigrationService

    executors: List[FakeExecutor] = []

    def _make(settings=None, **executor_kwargs):
        @contextmanager
        def factory():
            ex = FakeExecutor(fake_db, **executor_kwargs)
            executors.append(ex)
            yield ex

        svc = MigrationService(
            dialect=OracleDialect(), catalog=catalog, audit=audit, config_store=config_store,
            executor_factory=factory, locks=locks,
            settings=settings or Settings(DATABASE_URL="sqlite://", SQL_DIALECT="oracle"),
        )
        svc.executors = executors
        return svc

    return _make
