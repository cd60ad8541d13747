"""Error taxonomy for reorganization operations.

ValidationError family is raised before any mutation. StepExecutionError is raised
by the execution driver only after the audit log has recorded the failure.
PartialDataWarning is carried on results, not raised.
"""
from __future__ import annotations
from typing import Optional


class ReorgError(Exception):
    """Base class for all table reorganization errors."""


class ValidationError(ReorgError):
    """Bad input: unknown strategy type, missing column, unsupported operation."""


class NotFoundError(ValidationError):
    def __init__(self, kind: str, name: str):
        self.kind = kind
        self.name = name
        super().__init__(f"{kind} {name} not found")


class UnsupportedOperationError(ValidationError):
    """Statement or strategy cannot be expressed in the configured SQL dialect."""


class ObjectLockedError(ValidationError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Another reorganization is already running on {name}")


class StatementError(ReorgError):
    """A single statement failed in the underlying engine."""

    def __init__(self, message: str, sql_text: Optional[str] = None, error_code: Optional[str] = None):
        super().__init__(message)
        self.sql_text = sql_text
        self.error_code = error_code


class ConstraintViolation(StatementError):
    """Row-level integrity failure (unique, check, foreign key, not null)."""


class StepExecutionError(ReorgError):
    def __init__(self, message: str, operation_id: Optional[int], step_number: Optional[int] = None,
                 step_name: Optional[str] = None, sql_text: Optional[str] = None):
        super().__init__(message)
        self.operation_id = operation_id
        self.step_number = step_number
        self.step_name = step_name
        self.sql_text = sql_text

    def __str__(self) -> str:
        base = super().__str__()
        if self.operation_id is None:
            return base
        return f"{base} (operation_id={self.operation_id}, step={self.step_number}:{self.step_name})"


class PartialDataWarning(UserWarning):
    """Bulk load stopped early on row-level violations; some rows were not moved."""

    def __init__(self, message: str, rows_moved: int, batches: int):
        super().__init__(message)
        self.message = message
        self.rows_moved = rows_moved
        self.batches = batches


class LoggingFailure(ReorgError):
    """Audit write failed. Never leaves the audit log."""
