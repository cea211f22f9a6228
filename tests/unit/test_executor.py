import logging

import polars as pl
import pytest

from salesmart.common.config import WarehouseConfig
from salesmart.common.errors import InvariantViolationError, SalesMartError
from salesmart.observability.audit import DeltaAuditSink
from salesmart.orchestration.executor import ExecutionSummary, PipelineExecutor
from salesmart.processing.extractors import extract_entity
from salesmart.processing.key_generator import DeltaKeyAllocator

STEP_NAMES = [
    "ce_countries",
    "ce_cities",
    "ce_addresses",
    "ce_product_categories",
    "ce_customers",
    "ce_products_scd",
    "ce_discounts",
    "ce_orders",
    "ce_payments",
    "dim_customers",
    "dim_products_scd",
    "dim_discounts",
    "dim_order_details",
    "dim_payments",
    "dim_dates",
    "fct_orders",
]


@pytest.fixture
def executor(warehouse_config, allocator, clock):
    return PipelineExecutor(warehouse_config, allocator=allocator, clock=clock)


@pytest.fixture
def staged(stage_sales, individual_sales, company_sales):
    stage_sales(individual_sales(), company_sales())


def _failing_on(table_name: str, error: Exception):
    def extract(entity, *args, **kwargs):
        if entity.table_name == table_name:
            raise error
        return extract_entity(entity, *args, **kwargs)

    return extract


def _counts(summary: ExecutionSummary) -> dict[str, tuple[int, int]]:
    return {r.operation: (r.rows_inserted, r.rows_updated) for r in summary.results}


def test_dry_run_lists_steps_in_order(executor, caplog):
    with caplog.at_level(logging.INFO):
        names = executor.dry_run()

    assert names == STEP_NAMES
    assert "DRY RUN" in caplog.text


@pytest.mark.usefixtures("staged")
def test_first_run(executor):
    summary = executor.run()

    assert [r.operation for r in summary.results] == STEP_NAMES
    assert summary.successful == 16
    assert summary.failed == summary.skipped == 0
    assert _counts(summary) == {
        "ce_countries": (2, 0),
        "ce_cities": (3, 0),
        "ce_addresses": (3, 0),
        "ce_product_categories": (2, 0),
        "ce_customers": (3, 0),
        "ce_products_scd": (2, 0),
        "ce_discounts": (1, 0),
        "ce_orders": (3, 0),
        "ce_payments": (3, 0),
        "dim_customers": (3, 0),
        "dim_products_scd": (2, 0),
        "dim_discounts": (1, 0),
        "dim_order_details": (3, 0),
        "dim_payments": (3, 0),
        "dim_dates": (366, 0),
        "fct_orders": (3, 0),
    }
    assert "Total Steps: 16" in str(summary)


@pytest.mark.usefixtures("staged")
def test_rerun_is_a_noop(executor, clock):
    executor.run()
    clock.advance(days=1)

    summary = executor.run()

    assert summary.successful == 16
    assert summary.total_rows_inserted == 0
    assert summary.total_rows_updated == 0


def test_price_change_propagates(executor, clock, stage_sales, individual_sales, company_sales):
    stage_sales(individual_sales(), company_sales())
    executor.run()

    stage_sales(individual_sales("12.00"), company_sales("12.00"))
    clock.advance(days=1)
    counts = _counts(executor.run())

    assert counts["ce_products_scd"] == (1, 1)
    assert counts["ce_orders"] == (0, 2)
    assert counts["dim_products_scd"] == (1, 1)
    assert counts["dim_payments"] == (0, 2)
    assert counts["fct_orders"] == (0, 2)
    assert counts["ce_customers"] == (0, 0)
    assert counts["dim_dates"] == (0, 0)


@pytest.mark.usefixtures("staged")
def test_failure_skips_remaining_steps(executor, warehouse, monkeypatch):
    error = InvariantViolationError("two active versions of P1", {"entity": "ce_orders"})
    monkeypatch.setattr(
        "salesmart.orchestration.orchestrator.extract_entity", _failing_on("ce_orders", error)
    )

    summary = executor.run()

    failed = summary.result("ce_orders")
    assert failed.status == "FAILED"
    assert failed.error_kind == "InvariantViolationError"
    assert (failed.rows_inserted, failed.rows_updated) == (0, 0)
    assert summary.successful == 7
    assert summary.failed == 1
    assert summary.skipped == 8
    assert summary.result("fct_orders").error_message == "Skipped due to failure in ce_orders"
    # Provisioned before the failure: only the unknown member
    assert warehouse.read(warehouse.table_path("conformed", "ce_orders")).height == 1

    with pytest.raises(InvariantViolationError):
        summary.raise_for_failures()

    log = DeltaAuditSink(warehouse).read()
    statuses = dict(zip(log["proc_name"], log["status"]))
    assert statuses["ce_orders"] == "FAILED"
    assert statuses["ce_payments"] == "SKIPPED"
    assert statuses["ce_countries"] == "SUCCESS"
    assert log.filter(pl.col("proc_name") == "ce_orders")["rows_inserted"].to_list() == [0]


@pytest.mark.usefixtures("staged")
def test_continue_after_failure(warehouse_config, allocator, clock, monkeypatch):
    config = warehouse_config.model_copy(update={"stop_on_failure": False})
    executor = PipelineExecutor(config, allocator=allocator, clock=clock)

    monkeypatch.setattr(
        "salesmart.orchestration.orchestrator.extract_entity",
        _failing_on("ce_discounts", RuntimeError("unreadable batch")),
    )

    summary = executor.run()

    assert summary.failed == 1
    assert summary.skipped == 0
    assert summary.result("ce_discounts").error_kind == "NonRetriableError"
    assert summary.result("ce_orders").succeeded
    assert summary.total_steps == 16


@pytest.mark.usefixtures("staged")
def test_audit_log_has_one_record_per_step(executor, warehouse):
    executor.run()

    log = DeltaAuditSink(warehouse).read()

    assert sorted(log["proc_name"].to_list()) == sorted(STEP_NAMES)
    assert set(log["status"]) == {"SUCCESS"}


@pytest.mark.usefixtures("staged")
def test_persisted_keys_survive_a_new_executor(warehouse_config, warehouse, clock):
    PipelineExecutor(warehouse_config, clock=clock).run()
    allocator = DeltaKeyAllocator(warehouse, clock)

    assert allocator.current_value("ce_orders") == 3

    summary = PipelineExecutor(warehouse_config, clock=clock).run()
    assert summary.total_rows_inserted == 0


def test_nothing_staged_is_a_noop(warehouse_config, allocator, clock):
    summary = PipelineExecutor(warehouse_config, allocator=allocator, clock=clock).run()

    assert summary.successful == 16
    assert summary.total_rows_inserted == 0


def test_unreadable_staging_raises(tmp_path, allocator, clock, monkeypatch):
    executor = PipelineExecutor(
        WarehouseConfig(root=str(tmp_path / "wh"), audit_sinks=["logging"]),
        allocator=allocator,
        clock=clock,
    )

    def broken_load():
        raise OSError("staging mount gone")

    monkeypatch.setattr(executor.loader, "load", broken_load)

    with pytest.raises(SalesMartError) as exc_info:
        executor.run()
    assert exc_info.value.kind == "StorageUnavailableError"
    assert exc_info.value.details["entity"] == "staging"

