"""Statement execution against the target engine.

The driver and bulk loader only talk to a ``StatementExecutor``; the SQLAlchemy
implementation binds one connection (one transaction scope) per execution.
"""
from __future__ import annotations
import logging
import re
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Protocol

from sqlalchemy import text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from table_reorg.dialects import SqlDialect
from table_reorg.errors import ConstraintViolation, StatementError

logger = logging.getLogger(__name__)

_ORA_CODE = re.compile(r"ORA-\d{5}")


class StatementExecutor(Protocol):
    dialect: SqlDialect

    def render(self, stmt) -> List[str]: ...

    def execute(self, stmt) -> int: ...

    def scalar(self, stmt) -> Any: ...

    def savepoint(self): ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...


def error_code(exc: BaseException) -> Optional[str]:
    orig = getattr(exc, "orig", None) or exc
    code = getattr(orig, "pgcode", None)
    if code:
        return str(code)
    m = _ORA_CODE.search(str(orig))
    if m:
        return m.group(0)
    return type(orig).__name__


class SqlAlchemyExecutor:
    """Runs rendered statements on a single SQLAlchemy connection."""

    def __init__(self, connection: Connection, dialect: SqlDialect):
        self.connection = connection
        self.dialect = dialect

    def render(self, stmt) -> List[str]:
        return self.dialect.render(stmt)

    def execute(self, stmt) -> int:
        total = 0
        for sql in self.render(stmt):
            result = self._run(sql)
            if result.rowcount and result.rowcount > 0:
                total += result.rowcount
        return total

    def scalar(self, stmt) -> Any:
        value = None
        for sql in self.render(stmt):
            value = self._run(sql).scalar()
        return value

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        with self.connection.begin_nested():
            yield

    def commit(self) -> None:
        self.connection.commit()

    def rollback(self) -> None:
        self.connection.rollback()

    def _run(self, sql: str):
        logger.debug(f"Executing: {sql}")
        try:
            return self.connection.execute(text(sql))
        except IntegrityError as e:
            raise ConstraintViolation(str(e.orig), sql_text=sql, error_code=error_code(e)) from e
        except SQLAlchemyError as e:
            raise StatementError(str(getattr(e, "orig", e)), sql_text=sql, error_code=error_code(e)) from e
