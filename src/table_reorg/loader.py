"""Batched, checkpointed row transfer between two tables.

Rows are moved in key order using a watermark: each batch first asks for the key
bound of the next ``batch_size`` rows above the watermark, then moves the range
(watermark, bound]. The watermark only advances, so no batch re-reads the target.
The load is not atomic: it commits every ``checkpoint_batches`` batches.
"""
from __future__ import annotations
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

from prometheus_client import Counter, Histogram

from table_reorg.audit import AuditLog, SUCCESS, WARNING
from table_reorg.errors import ConstraintViolation, PartialDataWarning
from table_reorg.executor import StatementExecutor
from table_reorg.planner import BulkLoad
from table_reorg.statements import InsertRange, SelectUpperBound

logger = logging.getLogger(__name__)

LOADER_BATCHES = Counter('reorg_loader_batches_total', 'Bulk load batches', ['result'])
LOADER_ROWS = Counter('reorg_loader_rows_total', 'Rows moved by the bulk loader')
LOADER_BATCH_SECONDS = Histogram('reorg_loader_batch_seconds', 'Bulk load batch duration',
                                 buckets=(0.01, 0.05, 0.1, 0.5, 1, 5, 15, 60, 300))


@dataclass
class LoadResult:
    status: str  # SUCCESS|WARNING
    rows_moved: int
    batches: int
    checkpoints: int
    last_key: Any = None
    warning: Optional[PartialDataWarning] = None


class BulkLoader:
    def __init__(self, executor: StatementExecutor, audit: Optional[AuditLog] = None):
        self.executor = executor
        self.audit = audit

    def _move(self, stmt: InsertRange) -> int:
        t0 = time.time()
        with self.executor.savepoint():
            moved = self.executor.execute(stmt)
        LOADER_BATCH_SECONDS.observe(time.time() - t0)
        LOADER_BATCHES.labels(result="ok").inc()
        LOADER_ROWS.inc(moved)
        return moved

    def load(self, bulk: BulkLoad, parent_operation_id: Optional[int] = None) -> LoadResult:
        """Move every row of ``bulk.source`` into ``bulk.target``.

        A constraint violation stops the load early: the failing batch is rolled back,
        everything moved before it is committed and the result carries a
        PartialDataWarning. Other statement failures propagate.
        """
        checkpoint_every = max(1, bulk.checkpoint_batches)
        watermark: Any = None
        rows = 0
        batches = 0
        checkpoints = 0
        pending = 0
        logger.info(f"Bulk load {bulk.source} -> {bulk.target} by {bulk.key}, batch_size={bulk.batch_size}")

        def insert(lower, upper, nulls_only=False) -> InsertRange:
            return InsertRange(bulk.target, bulk.source, bulk.key, lower=lower, upper=upper,
                               nulls_only=nulls_only, columns=bulk.columns, parallel_degree=bulk.parallel_degree)

        try:
            while True:
                upper = self.executor.scalar(SelectUpperBound(bulk.source, bulk.key, bulk.batch_size, lower=watermark))
                if upper is None:
                    break
                rows += self._move(insert(watermark, upper))
                batches += 1
                pending += 1
                watermark = upper
                if pending >= checkpoint_every:
                    self.executor.commit()
                    checkpoints += 1
                    pending = 0
                    logger.info(f"Bulk load {bulk.target}: {rows} rows in {batches} batches (checkpoint {checkpoints})")
            rows += self._move(insert(None, None, nulls_only=True))
            batches += 1
        except ConstraintViolation as e:
            LOADER_BATCHES.labels(result="violation").inc()
            self.executor.commit()
            checkpoints += 1
            message = (f"Bulk load into {bulk.target} stopped after {rows} rows: constraint violation "
                       f"in batch above {bulk.key}={watermark!r}")
            logger.warning(f"{message}: {e}")
            if self.audit is not None:
                self.audit.record(
                    "BULK_LOAD", WARNING, target_object=bulk.target, message=message,
                    parent_operation_id=parent_operation_id, sql_text=e.sql_text,
                    error_code=e.error_code, error_message=str(e), rows_processed=rows,
                    context={"source": bulk.source, "key": bulk.key, "watermark": repr(watermark), "batches": batches},
                )
            return LoadResult(WARNING, rows, batches, checkpoints, watermark,
                              PartialDataWarning(message, rows_moved=rows, batches=batches))
        self.executor.commit()
        checkpoints += 1
        logger.info(f"Bulk load {bulk.target} complete: {rows} rows in {batches} batches")
        return LoadResult(SUCCESS, rows, batches, checkpoints, watermark)
