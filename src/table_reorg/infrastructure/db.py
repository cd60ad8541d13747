from __future__ import annotations
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from table_reorg.config import get_settings


class Base(DeclarativeBase):
    pass


def _dsn() -> str:
    return get_settings().database_url


def _audit_dsn() -> str:
    s = get_settings()
    return s.audit_database_url or s.database_url


engine = create_engine(_dsn(), pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

# Audit writes use their own pool so they commit independently of any open work on `engine`
audit_engine = create_engine(_audit_dsn(), pool_pre_ping=True)
AuditSessionLocal = sessionmaker(bind=audit_engine, autoflush=False, expire_on_commit=False)
