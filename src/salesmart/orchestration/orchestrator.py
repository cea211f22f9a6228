"""Orchestrator for single merge invocations.

Each invocation targets one table and runs:
1. Acquire the table lock
2. Provision the table (unknown member included)
3. Build the batch (extract / project / resolve / calendar)
4. Merge inside a table transaction
5. Report the outcome to the audit sink

Any failure is turned into a FAILED ``MergeResult`` (counts frozen at zero)
rather than escaping; ``MergeResult.raise_for_status()`` re-signals it.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from pathlib import Path

from salesmart.catalog import DIM_DATES, FCT_ORDERS
from salesmart.common.config import EntityConfig
from salesmart.common.constants import DEFAULT_PARTITION_SPAN_MONTHS, LAYER_FACT
from salesmart.common.errors import wrap_exception
from salesmart.common.utils import Clock, utc_now
from salesmart.models import MergeCounts, MergeResult
from salesmart.observability.audit import AuditSink, LoggingAuditSink, record_result
from salesmart.orchestration.transaction import TableLockRegistry, TransactionManager
from salesmart.processing.calendar import DateDimensionLoader
from salesmart.processing.extractors import extract_entity
from salesmart.processing.facts import FactMerger
from salesmart.processing.key_generator import SurrogateKeyAllocator
from salesmart.processing.loader import StagedBatch
from salesmart.processing.merger import EntityMerger
from salesmart.processing.partitions import PartitionManager
from salesmart.processing.projection import project_dimension
from salesmart.processing.resolver import ReferenceResolver
from salesmart.processing.table_creator import TableCreator
from salesmart.storage import DeltaWarehouse

logger = logging.getLogger(__name__)


class Orchestrator:
    """
    Runs merge invocations with locking, rollback and auditing.

    Args:
        warehouse: Storage for every layer.
        allocator: Surrogate key allocator shared by the run.
        audit: Sink receiving one record per invocation.
        locks: Per-table lock registry; share one across concurrent callers.
        clock: Source of the invocation timestamp.
        partition_span_months: Width of one fact partition.
        date_formats: Accepted date layouts of staged extracts.
    """

    def __init__(
        self,
        warehouse: DeltaWarehouse,
        allocator: SurrogateKeyAllocator,
        audit: AuditSink | None = None,
        locks: TableLockRegistry | None = None,
        clock: Clock = utc_now,
        partition_span_months: int = DEFAULT_PARTITION_SPAN_MONTHS,
        date_formats: list[str] | None = None,
    ):
        self.warehouse = warehouse
        self.allocator = allocator
        self.audit = audit or LoggingAuditSink()
        self.locks = locks or TableLockRegistry()
        self.transactions = TransactionManager(warehouse)
        self.table_creator = TableCreator(warehouse)
        self.clock = clock
        self.partition_span_months = partition_span_months
        self.date_formats = date_formats

    def invoke(
        self,
        operation: str,
        path: Path,
        work: Callable[[], MergeCounts],
        prepare: Callable[[], object] | None = None,
    ) -> MergeResult:
        """
        Run ``work`` as one atomic invocation against the table at ``path``.

        ``prepare`` runs under the lock but before the transaction starts
        (table provisioning), so a rollback never undoes it.
        """
        start_time = time.time()
        try:
            with self.locks.hold(operation):
                if prepare is not None:
                    prepare()
                with self.transactions.table_transaction(path):
                    counts = work()
            result = MergeResult.success(operation, counts, time.time() - start_time)
            logger.info(
                f"  ✓ Completed: {operation} ({result.duration_seconds:.1f}s, "
                f"inserted={result.rows_inserted}, updated={result.rows_updated}, "
                f"rejected={result.rows_rejected})"
            )
        except Exception as e:
            error = wrap_exception(e, entity=operation)
            result = MergeResult.failure(operation, error, time.time() - start_time)
            logger.error(f"  ✗ Failed: {operation} - {error.kind}: {error.message}")

        record_result(self.audit, result)
        return result

    def merge_conformed(self, entity: EntityConfig, staged: StagedBatch) -> MergeResult:
        """Extract one conformed entity from the staged sources and merge it."""

        def work() -> MergeCounts:
            resolver = ReferenceResolver(self.warehouse)
            classified = extract_entity(entity, staged, resolver, self.date_formats)
            counts = EntityMerger(entity, self.warehouse, self.allocator).merge(
                classified.valid, self.clock()
            )
            return counts + MergeCounts(rows_rejected=classified.rejected_count)

        return self.invoke(
            entity.table_name,
            self.warehouse.table_path(entity.layer, entity.table_name),
            work,
            prepare=lambda: self.table_creator.ensure_table(entity),
        )

    def merge_dimension(self, entity: EntityConfig) -> MergeResult:
        """Project one dimension from the conformed layer and merge it."""

        def work() -> MergeCounts:
            batch = project_dimension(entity, self.warehouse)
            return EntityMerger(entity, self.warehouse, self.allocator).merge(
                batch, self.clock()
            )

        return self.invoke(
            entity.table_name,
            self.warehouse.table_path(entity.layer, entity.table_name),
            work,
            prepare=lambda: self.table_creator.ensure_table(entity),
        )

    def merge_facts(self) -> MergeResult:
        """Step A (insert) and Step B (repair) of ``fct_orders``."""

        def work() -> MergeCounts:
            partitions = PartitionManager(
                self.warehouse, FCT_ORDERS, self.partition_span_months, self.clock
            )
            merger = FactMerger(self.warehouse, partitions, ReferenceResolver(self.warehouse))
            return merger.merge(self.clock())

        return self.invoke(
            FCT_ORDERS, self.warehouse.table_path(LAYER_FACT, FCT_ORDERS), work
        )

    def merge_dates(self) -> MergeResult:
        """Extend ``dim_dates`` over the years holding order dates."""
        loader = DateDimensionLoader(self.warehouse)
        return self.invoke(
            DIM_DATES,
            loader.path,
            lambda: loader.merge(self.clock()),
            prepare=loader.ensure_table,
        )
