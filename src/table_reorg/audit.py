"""Operation audit log with its own transaction scope.

Writes go through a dedicated session factory and commit immediately, so an entry
survives a rollback of the operation it describes. Writes never raise: a failed
audit write is logged, counted and reported to the caller as ``None``/``False``.
"""
from __future__ import annotations
import getpass
import logging
import os
import socket
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional

from prometheus_client import Counter, Histogram
from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from table_reorg.errors import LoggingFailure
from table_reorg.models.tables import OperationLog

logger = logging.getLogger(__name__)

AUDIT_WRITES = Counter('reorg_audit_writes_total', 'Audit log writes', ['kind', 'result'])
OPERATION_DURATION = Histogram('reorg_operation_duration_seconds', 'Duration of finished audited operations',
                               ['operation_type', 'status'], buckets=(0.1, 0.5, 1, 5, 30, 60, 300, 1800, 3600, 14400))

STARTED = "STARTED"
SUCCESS = "SUCCESS"
ERROR = "ERROR"
WARNING = "WARNING"
TERMINAL_STATUSES = (SUCCESS, ERROR, WARNING)


@dataclass(frozen=True)
class AuditLogConfig:
    enabled: bool = True
    retention_days: int = 90


@dataclass(frozen=True)
class OperationLogEntry:
    """Detached snapshot of an ``operation_log`` row."""
    operation_id: int
    parent_operation_id: Optional[int]
    operation_type: str
    target_object: Optional[str]
    target_type: Optional[str]
    status: str
    message: Optional[str]
    duration_ms: Optional[int]
    started_at: datetime
    finished_at: Optional[datetime]
    user_name: Optional[str]
    session_id: Optional[str]
    sql_text: Optional[str]
    error_code: Optional[str]
    error_message: Optional[str]
    rows_processed: Optional[int]
    objects_affected: Optional[int]
    context: Optional[dict]

    @classmethod
    def from_row(cls, row: OperationLog) -> "OperationLogEntry":
        return cls(
            operation_id=row.operation_id,
            parent_operation_id=row.parent_operation_id,
            operation_type=row.operation_type,
            target_object=row.target_object,
            target_type=row.target_type,
            status=row.status,
            message=row.message,
            duration_ms=row.duration_ms,
            started_at=row.started_at,
            finished_at=row.finished_at,
            user_name=row.user_name,
            session_id=row.session_id,
            sql_text=row.sql_text,
            error_code=row.error_code,
            error_message=row.error_message,
            rows_processed=row.rows_processed,
            objects_affected=row.objects_affected,
            context=row.context,
        )


@dataclass(frozen=True)
class OperationStatistics:
    operation_type: str
    status: str
    count: int
    avg_duration_ms: Optional[float]
    min_duration_ms: Optional[int]
    max_duration_ms: Optional[int]
    p50_duration_ms: Optional[float]
    p95_duration_ms: Optional[float]
    p99_duration_ms: Optional[float]
    first_at: Optional[datetime]
    last_at: Optional[datetime]


@dataclass(frozen=True)
class ErrorSummary:
    target_object: Optional[str]
    operation_type: str
    error_code: Optional[str]
    error_message: Optional[str]
    occurrences: int
    first_at: datetime
    last_at: datetime


def percentile(sorted_values: List[float], q: float) -> Optional[float]:
    """Linear interpolation between closest ranks (PERCENTILE_CONT semantics)."""
    if not sorted_values:
        return None
    if len(sorted_values) == 1:
        return float(sorted_values[0])
    pos = (len(sorted_values) - 1) * q
    lo = int(pos)
    hi = min(lo + 1, len(sorted_values) - 1)
    frac = pos - lo
    return float(sorted_values[lo]) + (float(sorted_values[hi]) - float(sorted_values[lo])) * frac


def _truncate(value: Optional[str], limit: int) -> Optional[str]:
    if value is None:
        return None
    return value if len(value) <= limit else value[: limit - 3] + "..."


def _current_user() -> Optional[str]:
    try:
        return getpass.getuser()
    except Exception:
        return None


def _default_session_factory() -> Session:
    from table_reorg.infrastructure import db
    return db.AuditSessionLocal()


class AuditLog:
    def __init__(self, session_factory: Optional[Callable[[], Session]] = None,
                 config: Optional[AuditLogConfig] = None):
        self._session_factory = session_factory or _default_session_factory
        self._config = config or AuditLogConfig()
        self._session_id = f"{socket.gethostname()}:{os.getpid()}"
        self._user = _current_user()

    @property
    def config(self) -> AuditLogConfig:
        return self._config

    def reconfigure(self, enabled: Optional[bool] = None, retention_days: Optional[int] = None) -> AuditLogConfig:
        changes: Dict[str, Any] = {}
        if enabled is not None:
            changes["enabled"] = enabled
        if retention_days is not None:
            if retention_days < 1:
                raise ValueError("retention_days must be at least 1")
            changes["retention_days"] = retention_days
        self._config = replace(self._config, **changes)
        logger.info(f"Audit log reconfigured: enabled={self._config.enabled} retention_days={self._config.retention_days}")
        return self._config

    # --- writes (never raise) ----------------------------------------------------

    def _write(self, kind: str, fn: Callable[[Session], Any]) -> Any:
        if not self._config.enabled:
            return None
        session = None
        try:
            session = self._session_factory()
            result = fn(session)
            session.commit()
            AUDIT_WRITES.labels(kind=kind, result="ok").inc()
            return result
        except Exception as e:
            failure = LoggingFailure(f"Audit {kind} write failed: {e}")
            AUDIT_WRITES.labels(kind=kind, result="failed").inc()
            logger.warning(str(failure))
            if session is not None:
                try:
                    session.rollback()
                except Exception as rollback_error:
                    logger.debug(f"Audit rollback failed: {rollback_error}")
            return None
        finally:
            if session is not None:
                session.close()

    def start(self, operation_type: str, target_object: Optional[str] = None, target_type: str = "TABLE",
              message: Optional[str] = None, parent_operation_id: Optional[int] = None,
              sql_text: Optional[str] = None, context: Optional[dict] = None) -> Optional[int]:
        """Open a STARTED entry; returns its operation_id or None when not recorded."""
        def _insert(session: Session) -> int:
            row = OperationLog(
                parent_operation_id=parent_operation_id,
                operation_type=operation_type,
                target_object=target_object,
                target_type=target_type,
                status=STARTED,
                message=_truncate(message, 1024),
                started_at=datetime.utcnow(),
                user_name=self._user,
                session_id=self._session_id,
                sql_text=sql_text,
                context=context,
            )
            session.add(row)
            session.flush()
            return row.operation_id
        return self._write("start", _insert)

    def finish(self, operation_id: Optional[int], status: str, message: Optional[str] = None,
               sql_text: Optional[str] = None, error_code: Optional[str] = None,
               error_message: Optional[str] = None, rows_processed: Optional[int] = None,
               objects_affected: Optional[int] = None, context: Optional[dict] = None) -> bool:
        """Move a STARTED entry to a terminal status. Terminal entries are left untouched."""
        if operation_id is None:
            return False
        if status not in TERMINAL_STATUSES:
            logger.warning(f"Ignoring non-terminal finish status {status} for operation {operation_id}")
            return False

        def _update(session: Session) -> bool:
            row = session.get(OperationLog, operation_id)
            if row is None or row.status != STARTED:
                return False
            now = datetime.utcnow()
            values: Dict[str, Any] = {
                "status": status,
                "finished_at": now,
                "duration_ms": int((now - row.started_at).total_seconds() * 1000),
            }
            if message is not None:
                values["message"] = _truncate(message, 1024)
            if sql_text is not None:
                values["sql_text"] = sql_text
            if error_code is not None:
                values["error_code"] = _truncate(error_code, 32)
            if error_message is not None:
                values["error_message"] = _truncate(error_message, 2048)
            if rows_processed is not None:
                values["rows_processed"] = rows_processed
            if objects_affected is not None:
                values["objects_affected"] = objects_affected
            if context is not None:
                values["context"] = {**(row.context or {}), **context}
            res = session.execute(
                update(OperationLog)
                .where(OperationLog.operation_id == operation_id, OperationLog.status == STARTED)
                .values(**values)
            )
            if res.rowcount:
                OPERATION_DURATION.labels(operation_type=row.operation_type, status=status).observe(values["duration_ms"] / 1000.0)
            return bool(res.rowcount)
        return bool(self._write("finish", _update))

    def record(self, operation_type: str, status: str, target_object: Optional[str] = None,
               message: Optional[str] = None, target_type: str = "TABLE",
               parent_operation_id: Optional[int] = None, sql_text: Optional[str] = None,
               error_code: Optional[str] = None, error_message: Optional[str] = None,
               duration_ms: Optional[int] = None, rows_processed: Optional[int] = None,
               context: Optional[dict] = None) -> Optional[int]:
        """Write a single already-terminal entry."""
        def _insert(session: Session) -> int:
            now = datetime.utcnow()
            row = OperationLog(
                parent_operation_id=parent_operation_id,
                operation_type=operation_type,
                target_object=target_object,
                target_type=target_type,
                status=status,
                message=_truncate(message, 1024),
                duration_ms=duration_ms,
                started_at=now,
                finished_at=now,
                user_name=self._user,
                session_id=self._session_id,
                sql_text=sql_text,
                error_code=_truncate(error_code, 32),
                error_message=_truncate(error_message, 2048),
                rows_processed=rows_processed,
                context=context,
            )
            session.add(row)
            session.flush()
            return row.operation_id
        return self._write("record", _insert)

    # --- reads --------------------------------------------------------------------

    def _read_session(self) -> Session:
        return self._session_factory()

    def history(self, target_object: Optional[str] = None, operation_type: Optional[str] = None,
                status: Optional[str] = None, start: Optional[datetime] = None,
                end: Optional[datetime] = None, parent_operation_id: Optional[int] = None,
                limit: Optional[int] = None, newest_first: bool = True) -> Iterator[OperationLogEntry]:
        """Lazy, single-pass iteration over matching entries."""
        stmt = select(OperationLog)
        if target_object:
            stmt = stmt.where(OperationLog.target_object == target_object.upper())
        if operation_type:
            stmt = stmt.where(OperationLog.operation_type == operation_type)
        if status:
            stmt = stmt.where(OperationLog.status == status)
        if start:
            stmt = stmt.where(OperationLog.started_at >= start)
        if end:
            stmt = stmt.where(OperationLog.started_at <= end)
        if parent_operation_id is not None:
            stmt = stmt.where(OperationLog.parent_operation_id == parent_operation_id)
        if newest_first:
            stmt = stmt.order_by(OperationLog.started_at.desc(), OperationLog.operation_id.desc())
        else:
            stmt = stmt.order_by(OperationLog.operation_id.asc())
        if limit:
            stmt = stmt.limit(limit)
        session = self._read_session()
        try:
            for row in session.scalars(stmt.execution_options(yield_per=500)):
                yield OperationLogEntry.from_row(row)
        finally:
            session.close()

    def get(self, operation_id: int) -> Optional[OperationLogEntry]:
        session = self._read_session()
        try:
            row = session.get(OperationLog, operation_id)
            return OperationLogEntry.from_row(row) if row is not None else None
        finally:
            session.close()

    def steps(self, operation_id: int) -> List[OperationLogEntry]:
        """Step entries recorded under a plan-level operation, in execution order."""
        return list(self.history(parent_operation_id=operation_id, newest_first=False))

    def statistics(self, start: Optional[datetime] = None, end: Optional[datetime] = None,
                   target_object: Optional[str] = None) -> List[OperationStatistics]:
        stmt = select(OperationLog.operation_type, OperationLog.status, OperationLog.duration_ms, OperationLog.started_at)
        if start:
            stmt = stmt.where(OperationLog.started_at >= start)
        if end:
            stmt = stmt.where(OperationLog.started_at <= end)
        if target_object:
            stmt = stmt.where(OperationLog.target_object == target_object.upper())
        groups: Dict[tuple, Dict[str, Any]] = {}
        session = self._read_session()
        try:
            for op_type, status, duration, started in session.execute(stmt):
                g = groups.setdefault((op_type, status), {"count": 0, "durations": [], "first": started, "last": started})
                g["count"] += 1
                if duration is not None:
                    g["durations"].append(duration)
                g["first"] = min(g["first"], started)
                g["last"] = max(g["last"], started)
        finally:
            session.close()
        out = []
        for (op_type, status), g in sorted(groups.items()):
            durations = sorted(g["durations"])
            out.append(OperationStatistics(
                operation_type=op_type,
                status=status,
                count=g["count"],
                avg_duration_ms=(sum(durations) / len(durations)) if durations else None,
                min_duration_ms=durations[0] if durations else None,
                max_duration_ms=durations[-1] if durations else None,
                p50_duration_ms=percentile(durations, 0.50),
                p95_duration_ms=percentile(durations, 0.95),
                p99_duration_ms=percentile(durations, 0.99),
                first_at=g["first"],
                last_at=g["last"],
            ))
        return out

    def error_summary(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> List[ErrorSummary]:
        stmt = (
            select(
                OperationLog.target_object,
                OperationLog.operation_type,
                OperationLog.error_code,
                OperationLog.error_message,
                func.count().label("occurrences"),
                func.min(OperationLog.started_at).label("first_at"),
                func.max(OperationLog.started_at).label("last_at"),
            )
            .where(OperationLog.status == ERROR)
            .group_by(OperationLog.target_object, OperationLog.operation_type,
                      OperationLog.error_code, OperationLog.error_message)
            .order_by(func.count().desc())
        )
        if start:
            stmt = stmt.where(OperationLog.started_at >= start)
        if end:
            stmt = stmt.where(OperationLog.started_at <= end)
        session = self._read_session()
        try:
            return [ErrorSummary(*row) for row in session.execute(stmt)]
        finally:
            session.close()

    def purge(self, retention_days: Optional[int] = None) -> int:
        """Delete entries older than the retention window. Returns rows removed."""
        days = retention_days if retention_days is not None else self._config.retention_days
        cutoff = datetime.utcnow() - timedelta(days=days)
        session = self._read_session()
        t0 = time.time()
        try:
            res = session.execute(delete(OperationLog).where(OperationLog.started_at < cutoff))
            session.commit()
            removed = res.rowcount or 0
            logger.info(f"Purged {removed} audit entries older than {days} days in {time.time() - t0:.2f}s")
            return removed
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
