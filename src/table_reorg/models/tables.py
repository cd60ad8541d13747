from __future__ import annotations
from datetime import datetime
from sqlalchemy import String, Integer, BigInteger, Boolean, DateTime, JSON, Text, Index, case, text, true
from sqlalchemy.orm import Mapped, mapped_column
from table_reorg.infrastructure.db import Base


class StrategyConfig(Base):
    """Declared target partitioning strategy per table.

    Rows are versioned and never deleted; at most one row per target is active.
    """
    __tablename__ = "strategy_config"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    target_object: Mapped[str] = mapped_column(String(128), index=True)
    strategy_type: Mapped[str] = mapped_column(String(16), index=True)
    partition_column: Mapped[str | None] = mapped_column(String(128), default=None)
    interval_expression: Mapped[str | None] = mapped_column(String(256), default=None)
    subpartition_type: Mapped[str | None] = mapped_column(String(16), default=None)
    subpartition_column: Mapped[str | None] = mapped_column(String(128), default=None)
    tablespace: Mapped[str | None] = mapped_column(String(128), default=None)
    retention_days: Mapped[int] = mapped_column(Integer, default=90)
    auto_maintenance: Mapped[bool] = mapped_column(Boolean, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    version: Mapped[int] = mapped_column(Integer, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    created_by: Mapped[str | None] = mapped_column(String(128), default=None)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    updated_by: Mapped[str | None] = mapped_column(String(128), default=None)

    __table_args__ = (
        Index(
            "uq_strategy_config_active_target",
            "target_object",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ).ddl_if(dialect=("postgresql", "sqlite")),
        Index("ix_strategy_config_target_version", "target_object", "version"),
    )


# Oracle has no partial indexes; entirely-NULL keys are not indexed, so inactive rows drop out
Index(
    "uq_strategy_config_active_fn",
    case((StrategyConfig.is_active == true(), StrategyConfig.target_object)),
    unique=True,
).ddl_if(dialect="oracle")


class OperationLog(Base):
    """Append-mostly history of reorganization operations and their steps."""
    __tablename__ = "operation_log"
    operation_id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    parent_operation_id: Mapped[int | None] = mapped_column(BigInteger, default=None, index=True)
    operation_type: Mapped[str] = mapped_column(String(64), index=True)
    target_object: Mapped[str | None] = mapped_column(String(128), index=True, default=None)
    target_type: Mapped[str | None] = mapped_column(String(32), default=None)
    status: Mapped[str] = mapped_column(String(16), index=True, default="STARTED")  # STARTED|SUCCESS|ERROR|WARNING
    message: Mapped[str | None] = mapped_column(String(1024), default=None)
    duration_ms: Mapped[int | None] = mapped_column(BigInteger, default=None)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    user_name: Mapped[str | None] = mapped_column(String(128), default=None)
    session_id: Mapped[str | None] = mapped_column(String(64), default=None)
    sql_text: Mapped[str | None] = mapped_column(Text, default=None)
    error_code: Mapped[str | None] = mapped_column(String(32), default=None)
    error_message: Mapped[str | None] = mapped_column(String(2048), default=None)
    rows_processed: Mapped[int | None] = mapped_column(BigInteger, default=None)
    objects_affected: Mapped[int | None] = mapped_column(Integer, default=None)
    context: Mapped[dict | None] = mapped_column(JSON, default=None)

    __table_args__ = (
        Index("ix_oplog_target_time", "target_object", "started_at"),
        Index("ix_oplog_type_status", "operation_type", "status"),
    )


class MaintenanceJob(Base):
    """Scheduled maintenance against a single table.

    An external scheduler decides when to call the runner; the row only carries
    schedule state, dependencies and run counters.
    """
    __tablename__ = "maintenance_jobs"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    job_name: Mapped[str] = mapped_column(String(128), unique=True)
    target_object: Mapped[str] = mapped_column(String(128), index=True)
    job_type: Mapped[str] = mapped_column(String(32), index=True)
    schedule_type: Mapped[str] = mapped_column(String(16), default="DAILY")  # HOURLY|DAILY|WEEKLY|MONTHLY
    schedule_value: Mapped[int] = mapped_column(Integer, default=1)
    depends_on: Mapped[list | None] = mapped_column(JSON, default=None)
    job_parameters: Mapped[dict | None] = mapped_column(JSON, default=None)
    resource_limits: Mapped[dict | None] = mapped_column(JSON, default=None)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    last_run: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    last_status: Mapped[str | None] = mapped_column(String(16), default=None)  # SUCCESS|ERROR|WARNING|SKIPPED
    last_duration_ms: Mapped[int | None] = mapped_column(BigInteger, default=None)
    last_error: Mapped[str | None] = mapped_column(String(1024), default=None)
    next_run: Mapped[datetime | None] = mapped_column(DateTime, default=None, index=True)
    execution_count: Mapped[int] = mapped_column(Integer, default=0)
    success_count: Mapped[int] = mapped_column(Integer, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_maintenance_due", "is_active", "next_run"),
    )
