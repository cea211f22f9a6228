import logging

from salesmart.common.errors import InvariantViolationError
from salesmart.models import MergeCounts, MergeResult
from salesmart.observability.audit import (
    CompositeAuditSink,
    DeltaAuditSink,
    LoggingAuditSink,
    record_result,
    record_safely,
)


class RecordingSink:
    def __init__(self):
        self.records = []

    def record(self, operation_name, rows_inserted, rows_updated, status, detail=None):
        self.records.append((operation_name, rows_inserted, rows_updated, status, detail))


class BrokenSink:
    def record(self, *args, **kwargs):
        raise RuntimeError("audit table unreachable")


def test_logging_sink(caplog):
    with caplog.at_level(logging.INFO, logger="salesmart.observability.audit"):
        LoggingAuditSink().record("ce_orders", 3, 1, "SUCCESS", "2 row(s) rejected")

    assert "AUDIT ce_orders: status=SUCCESS, inserted=3, updated=1 (2 row(s) rejected)" in caplog.text


def test_delta_sink_appends_records(warehouse, clock):
    sink = DeltaAuditSink(warehouse, clock=clock)
    sink.record("ce_orders", 3, 0, "SUCCESS")
    clock.advance(seconds=5)
    sink.record("fct_orders", 0, 0, "FAILED", "InvariantViolation in fct_orders: boom")

    log = sink.read()

    assert log["proc_name"].to_list() == ["ce_orders", "fct_orders"]
    assert log["status"].to_list() == ["SUCCESS", "FAILED"]
    assert log["detail"].to_list() == [None, "InvariantViolation in fct_orders: boom"]
    assert log["id"].n_unique() == 2


def test_delta_sink_reads_empty_before_first_record(warehouse):
    assert DeltaAuditSink(warehouse).read().is_empty()


def test_record_safely_swallows_sink_failure(caplog):
    with caplog.at_level(logging.WARNING):
        accepted = record_safely(BrokenSink(), "ce_orders", 1, 0, "SUCCESS")

    assert accepted is False
    assert "audit table unreachable" in caplog.text


def test_composite_continues_past_a_broken_sink():
    recording = RecordingSink()
    composite = CompositeAuditSink([BrokenSink(), recording])

    assert record_safely(composite, "ce_orders", 2, 1, "SUCCESS") is True
    assert recording.records == [("ce_orders", 2, 1, "SUCCESS", None)]


class TestRecordResult:
    def test_success(self):
        sink = RecordingSink()
        record_result(sink, MergeResult.success("ce_orders", MergeCounts(3, 1, 2)))

        assert sink.records == [("ce_orders", 3, 1, "SUCCESS", "2 row(s) rejected")]

    def test_failure_reports_zero_counts_and_cause(self):
        sink = RecordingSink()
        error = InvariantViolationError("two active versions", {"entity": "ce_products_scd"})

        record_result(sink, MergeResult.failure("ce_products_scd", error))

        operation, inserted, updated, status, detail = sink.records[0]
        assert (operation, inserted, updated, status) == ("ce_products_scd", 0, 0, "FAILED")
        assert "ce_products_scd" in detail
        assert "two active versions" in detail

    def test_skipped(self):
        sink = RecordingSink()
        record_result(sink, MergeResult.skipped("fct_orders", "Skipped due to failure in ce_orders"))

        assert sink.records == [
            ("fct_orders", 0, 0, "SKIPPED", "Skipped due to failure in ce_orders")
        ]
