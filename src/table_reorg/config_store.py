"""Versioned store of declared partitioning strategies, one active row per table."""
from __future__ import annotations
import logging
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from table_reorg.errors import NotFoundError, ValidationError
from table_reorg.models.tables import StrategyConfig
from table_reorg.statements import IntervalSpec, StrategyType, SubpartitionType, check_identifier

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = (
    "strategy_type", "partition_column", "interval_expression", "subpartition_type",
    "subpartition_column", "tablespace", "retention_days", "auto_maintenance",
)


@dataclass(frozen=True)
class StrategyConfigRecord:
    id: int
    target_object: str
    strategy_type: str
    partition_column: Optional[str]
    interval_expression: Optional[str]
    subpartition_type: Optional[str]
    subpartition_column: Optional[str]
    tablespace: Optional[str]
    retention_days: int
    auto_maintenance: bool
    is_active: bool
    version: int
    created_at: datetime
    created_by: Optional[str]
    updated_at: Optional[datetime]
    updated_by: Optional[str]

    @classmethod
    def from_row(cls, row: StrategyConfig) -> "StrategyConfigRecord":
        return cls(**{f.name: getattr(row, f.name) for f in fields(cls)})


def _default_session_factory() -> Session:
    from table_reorg.infrastructure import db
    return db.SessionLocal()


def _normalize(values: dict) -> dict:
    out = dict(values)
    if out.get("strategy_type") is not None:
        out["strategy_type"] = StrategyType.parse(out["strategy_type"]).value
    for key in ("partition_column", "subpartition_column", "tablespace"):
        if out.get(key) is not None:
            out[key] = check_identifier(out[key])
    if out.get("subpartition_type") is not None:
        try:
            out["subpartition_type"] = SubpartitionType(str(out["subpartition_type"]).upper()).value
        except ValueError:
            raise ValidationError(f"Invalid subpartition type {out['subpartition_type']!r}") from None
    if out.get("interval_expression") is not None:
        out["interval_expression"] = str(IntervalSpec.parse(out["interval_expression"]))
    if out.get("retention_days") is not None and int(out["retention_days"]) < 1:
        raise ValidationError("retention_days must be positive")
    return out


class StrategyConfigStore:
    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self._session_factory = session_factory or _default_session_factory

    def _active_row(self, session: Session, target: str) -> Optional[StrategyConfig]:
        return session.scalars(
            select(StrategyConfig).where(StrategyConfig.target_object == target, StrategyConfig.is_active.is_(True))
        ).first()

    def create(self, target_object: str, strategy_type, partition_column: Optional[str] = None,
               interval_expression: Optional[str] = None, subpartition_type: Optional[str] = None,
               subpartition_column: Optional[str] = None, tablespace: Optional[str] = None,
               retention_days: int = 90, auto_maintenance: bool = True,
               user: Optional[str] = None) -> StrategyConfigRecord:
        """Insert a new active row, deactivating any prior active row in the same transaction."""
        target = check_identifier(target_object)
        values = _normalize({
            "strategy_type": strategy_type,
            "partition_column": partition_column,
            "interval_expression": interval_expression,
            "subpartition_type": subpartition_type,
            "subpartition_column": subpartition_column,
            "tablespace": tablespace,
            "retention_days": retention_days,
            "auto_maintenance": auto_maintenance,
        })
        session = self._session_factory()
        try:
            latest = session.scalar(select(func.max(StrategyConfig.version)).where(StrategyConfig.target_object == target)) or 0
            session.execute(
                update(StrategyConfig)
                .where(StrategyConfig.target_object == target, StrategyConfig.is_active.is_(True))
                .values(is_active=False, updated_at=datetime.utcnow(), updated_by=user)
            )
            row = StrategyConfig(target_object=target, is_active=True, version=latest + 1,
                                 created_at=datetime.utcnow(), created_by=user, **values)
            session.add(row)
            session.commit()
            logger.info(f"Strategy config for {target} set to {row.strategy_type} (version {row.version})")
            return StrategyConfigRecord.from_row(row)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def update(self, target_object: str, user: Optional[str] = None, **changes) -> StrategyConfigRecord:
        """Partial update of the active row; fields passed as None keep their value."""
        target = check_identifier(target_object)
        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown strategy config fields: {sorted(unknown)}")
        values = _normalize({k: v for k, v in changes.items() if v is not None})
        session = self._session_factory()
        try:
            row = self._active_row(session, target)
            if row is None:
                raise NotFoundError("Active strategy config for", target)
            for key, value in values.items():
                setattr(row, key, value)
            row.version = (session.scalar(select(func.max(StrategyConfig.version))
                                          .where(StrategyConfig.target_object == target)) or 0) + 1
            row.updated_at = datetime.utcnow()
            row.updated_by = user
            session.commit()
            logger.info(f"Strategy config for {target} updated (version {row.version})")
            return StrategyConfigRecord.from_row(row)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def deactivate(self, target_object: str, user: Optional[str] = None) -> bool:
        """Soft delete: the row stays, only ``is_active`` flips. Returns False if nothing was active."""
        target = check_identifier(target_object)
        session = self._session_factory()
        try:
            res = session.execute(
                update(StrategyConfig)
                .where(StrategyConfig.target_object == target, StrategyConfig.is_active.is_(True))
                .values(is_active=False, updated_at=datetime.utcnow(), updated_by=user)
            )
            session.commit()
            if res.rowcount:
                logger.info(f"Strategy config for {target} deactivated")
            return bool(res.rowcount)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def get(self, target_object: str) -> StrategyConfigRecord:
        target = check_identifier(target_object)
        session = self._session_factory()
        try:
            row = self._active_row(session, target)
            if row is None:
                raise NotFoundError("Active strategy config for", target)
            return StrategyConfigRecord.from_row(row)
        finally:
            session.close()

    def history(self, target_object: str) -> List[StrategyConfigRecord]:
        target = check_identifier(target_object)
        session = self._session_factory()
        try:
            rows = session.scalars(
                select(StrategyConfig).where(StrategyConfig.target_object == target).order_by(StrategyConfig.version.desc())
            )
            return [StrategyConfigRecord.from_row(r) for r in rows]
        finally:
            session.close()

    def list_active(self) -> List[StrategyConfigRecord]:
        session = self._session_factory()
        try:
            rows = session.scalars(select(StrategyConfig).where(StrategyConfig.is_active.is_(True))
                                   .order_by(StrategyConfig.target_object))
            return [StrategyConfigRecord.from_row(r) for r in rows]
        finally:
            session.close()
