"""PipelineExecutor - ordered execution of one full warehouse run.

Steps run strictly one after another in dependency order:

    1. Conformed entities (geography -> addresses -> customers/products/
       discounts -> orders -> payments)
    2. Dimension projections, then the calendar (dim_dates)
    3. Fact merge (fct_orders)

Each step is one merge invocation returning a ``MergeResult``. The executor
decides from that result whether to continue; with ``stop_on_failure`` the
remaining steps are reported SKIPPED.

Example:
    from salesmart import PipelineExecutor, RuntimeOptions

    executor = PipelineExecutor(RuntimeOptions.from_environment().to_warehouse_config())
    summary = executor.run()
    summary.raise_for_failures()
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from salesmart.catalog import CONFORMED_LOAD_ORDER, DIMENSION_LOAD_ORDER, DIM_DATES, FCT_ORDERS
from salesmart.common.config import WarehouseConfig
from salesmart.common.errors import wrap_exception
from salesmart.common.utils import Clock, utc_now
from salesmart.models import STATUS_FAILED, STATUS_SKIPPED, STATUS_SUCCESS, MergeResult
from salesmart.observability.audit import (
    AuditSink,
    CompositeAuditSink,
    DeltaAuditSink,
    LoggingAuditSink,
    record_result,
)
from salesmart.orchestration.orchestrator import Orchestrator
from salesmart.orchestration.transaction import TableLockRegistry
from salesmart.processing.key_generator import DeltaKeyAllocator, SurrogateKeyAllocator
from salesmart.processing.loader import StagedBatch, StagingLoader
from salesmart.storage import DeltaWarehouse

logger = logging.getLogger(__name__)


@dataclass
class ExecutionSummary:
    """Summary of the entire execution run."""

    results: list[MergeResult] = field(default_factory=list)
    total_duration_seconds: float = 0.0

    def _count(self, status: str) -> int:
        return len([r for r in self.results if r.status == status])

    @property
    def total_steps(self) -> int:
        return len(self.results)

    @property
    def successful(self) -> int:
        return self._count(STATUS_SUCCESS)

    @property
    def failed(self) -> int:
        return self._count(STATUS_FAILED)

    @property
    def skipped(self) -> int:
        return self._count(STATUS_SKIPPED)

    @property
    def total_rows_inserted(self) -> int:
        return sum(r.rows_inserted for r in self.results)

    @property
    def total_rows_updated(self) -> int:
        return sum(r.rows_updated for r in self.results)

    @property
    def total_rows_rejected(self) -> int:
        return sum(r.rows_rejected for r in self.results)

    def result(self, operation: str) -> MergeResult:
        for r in self.results:
            if r.operation == operation:
                return r
        raise KeyError(f"No step named {operation}")

    def raise_for_failures(self) -> None:
        """Re-signal the first failed step."""
        for r in self.results:
            r.raise_for_status()

    def __str__(self) -> str:
        return (
            f"Execution Summary:\n"
            f"  Total Steps: {self.total_steps}\n"
            f"  Successful: {self.successful}\n"
            f"  Failed: {self.failed}\n"
            f"  Skipped: {self.skipped}\n"
            f"  Total Rows Inserted: {self.total_rows_inserted:,}\n"
            f"  Total Rows Updated: {self.total_rows_updated:,}\n"
            f"  Total Rows Rejected: {self.total_rows_rejected:,}\n"
            f"  Total Duration: {self.total_duration_seconds:.1f}s"
        )


def build_audit_sink(config: WarehouseConfig, warehouse: DeltaWarehouse) -> AuditSink:
    """Audit sink(s) enabled in the configuration."""
    sinks: list[AuditSink] = []
    if "logging" in config.audit_sinks:
        sinks.append(LoggingAuditSink())
    if "delta" in config.audit_sinks:
        sinks.append(DeltaAuditSink(warehouse, config.audit_table))
    return CompositeAuditSink(sinks)


class PipelineExecutor:
    """
    Runs every merge invocation of a warehouse run in dependency order.

    Args:
        config: Warehouse configuration.
        allocator: Surrogate key allocator (default: persisted in the
            ``control/key_sequences`` table).
        audit: Audit sink (default: built from ``config.audit_sinks``).
        locks: Table lock registry, shared with any concurrent executor.
        clock: Source of invocation timestamps.
    """

    def __init__(
        self,
        config: WarehouseConfig,
        allocator: SurrogateKeyAllocator | None = None,
        audit: AuditSink | None = None,
        locks: TableLockRegistry | None = None,
        clock: Clock = utc_now,
    ):
        self.config = config
        self.warehouse = DeltaWarehouse(config.root)
        self.allocator = allocator or DeltaKeyAllocator(self.warehouse, clock)
        self.audit = audit or build_audit_sink(config, self.warehouse)
        self.locks = locks or TableLockRegistry(config.lock_timeout_seconds)
        self.clock = clock
        self.stop_on_failure = config.stop_on_failure
        self.loader = StagingLoader(self.warehouse, date_formats=config.date_formats)
        self.orchestrator = self._create_orchestrator()

    def _create_orchestrator(self) -> Orchestrator:
        """Factory method to create Orchestrator instance. Can be overridden for testing."""
        return Orchestrator(
            self.warehouse,
            self.allocator,
            audit=self.audit,
            locks=self.locks,
            clock=self.clock,
            partition_span_months=self.config.partition_span_months,
            date_formats=self.config.date_formats,
        )

    def steps(self, staged: StagedBatch) -> list[tuple[str, Callable[[], MergeResult]]]:
        """The fixed step list: conformed entities, dimensions, the calendar, then the fact."""
        orchestrator = self.orchestrator
        steps: list[tuple[str, Callable[[], MergeResult]]] = []
        for entity in CONFORMED_LOAD_ORDER:
            steps.append(
                (entity.table_name, lambda e=entity: orchestrator.merge_conformed(e, staged))
            )
        for entity in DIMENSION_LOAD_ORDER:
            steps.append((entity.table_name, lambda e=entity: orchestrator.merge_dimension(e)))
        steps.append((DIM_DATES, orchestrator.merge_dates))
        steps.append((FCT_ORDERS, orchestrator.merge_facts))
        return steps

    def run(self) -> ExecutionSummary:
        """
        Execute all steps in order.

        Returns:
            ExecutionSummary with one result per step
        """
        overall_start = time.time()
        try:
            staged = self.loader.load()
        except Exception as e:
            error = wrap_exception(e, entity="staging")
            if error is e:
                raise
            raise error from e

        steps = self.steps(staged)
        logger.info(f"\n{'#' * 60}")
        logger.info("# SalesMart Pipeline Executor")
        logger.info(f"# Warehouse: {self.config.root}")
        logger.info(f"# Steps: {len(steps)}, staged rows: {staged.row_count}")
        logger.info(f"{'#' * 60}")

        results: list[MergeResult] = []
        halted_by: str | None = None
        for name, step in steps:
            if halted_by is not None:
                skipped = MergeResult.skipped(name, f"Skipped due to failure in {halted_by}")
                record_result(self.audit, skipped)
                results.append(skipped)
                continue
            logger.info(f"  Starting: {name}")
            result = step()
            results.append(result)
            if not result.succeeded and self.stop_on_failure:
                logger.info(f"\n⚠ Stopping due to failure in {name}")
                halted_by = name

        summary = ExecutionSummary(
            results=results, total_duration_seconds=time.time() - overall_start
        )
        logger.info(f"\n{'=' * 60}")
        logger.info(summary)
        logger.info(f"{'=' * 60}\n")
        return summary

    def dry_run(self) -> list[str]:
        """
        Log the execution plan without running any step.

        Returns:
            Step names in execution order.
        """
        names = [e.table_name for e in CONFORMED_LOAD_ORDER]
        names += [e.table_name for e in DIMENSION_LOAD_ORDER]
        names += [DIM_DATES, FCT_ORDERS]

        logger.info(f"\n{'#' * 60}")
        logger.info("# SalesMart Pipeline Executor - DRY RUN")
        logger.info("# (No steps will be executed)")
        logger.info(f"{'#' * 60}")
        for i, name in enumerate(names, 1):
            logger.info(f"  {i}. {name}")
        if self.stop_on_failure:
            logger.info("  A failed step skips every later step")
        return names
