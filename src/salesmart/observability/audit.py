"""
Audit sinks receiving one record per merge invocation.

A sink is best-effort: a failing sink must never abort the merge that
reported to it. Callers go through ``record_safely`` (or
``CompositeAuditSink``, which uses it for each member).
"""

from __future__ import annotations

import logging
import uuid
from typing import Protocol

import polars as pl

from salesmart.catalog import TIMESTAMP
from salesmart.common.constants import AUDIT_TABLE, LAYER_CONTROL
from salesmart.common.utils import Clock, utc_now
from salesmart.models import MergeResult
from salesmart.storage import DeltaWarehouse

logger = logging.getLogger(__name__)

AUDIT_SCHEMA: dict[str, pl.DataType] = {
    "id": pl.String(),
    "proc_name": pl.String(),
    "rows_inserted": pl.Int64(),
    "rows_updated": pl.Int64(),
    "status": pl.String(),
    "detail": pl.String(),
    "logged_at": TIMESTAMP,
}


class AuditSink(Protocol):
    """Receives the outcome of every merge invocation."""

    def record(
        self,
        operation_name: str,
        rows_inserted: int,
        rows_updated: int,
        status: str,
        detail: str | None = None,
    ) -> None: ...


class LoggingAuditSink:
    """Writes audit records to the standard logger."""

    def __init__(self, log: logging.Logger | None = None):
        self.log = log or logger

    def record(
        self,
        operation_name: str,
        rows_inserted: int,
        rows_updated: int,
        status: str,
        detail: str | None = None,
    ) -> None:
        message = (
            f"AUDIT {operation_name}: status={status}, "
            f"inserted={rows_inserted}, updated={rows_updated}"
        )
        if detail:
            message += f" ({detail})"
        self.log.info(message)


class DeltaAuditSink:
    """Appends audit records to ``control/mta_load_logs``."""

    def __init__(
        self,
        warehouse: DeltaWarehouse,
        table_name: str = AUDIT_TABLE,
        clock: Clock = utc_now,
    ):
        self.warehouse = warehouse
        self.path = warehouse.table_path(LAYER_CONTROL, table_name)
        self.clock = clock

    def record(
        self,
        operation_name: str,
        rows_inserted: int,
        rows_updated: int,
        status: str,
        detail: str | None = None,
    ) -> None:
        row = pl.DataFrame(
            {
                "id": [uuid.uuid4().hex],
                "proc_name": [operation_name],
                "rows_inserted": [rows_inserted],
                "rows_updated": [rows_updated],
                "status": [status],
                "detail": [detail],
                "logged_at": [self.clock()],
            },
            schema=AUDIT_SCHEMA,
        )
        self.warehouse.append(self.path, row)

    def read(self) -> pl.DataFrame:
        """Every audit record written so far, oldest first."""
        return self.warehouse.read(self.path, AUDIT_SCHEMA).sort("logged_at")


def record_safely(
    sink: AuditSink,
    operation_name: str,
    rows_inserted: int,
    rows_updated: int,
    status: str,
    detail: str | None = None,
) -> bool:
    """Record through ``sink``; a sink failure is logged and swallowed.

    Returns:
        True when the sink accepted the record.
    """
    try:
        sink.record(operation_name, rows_inserted, rows_updated, status, detail)
        return True
    except Exception as e:
        logger.warning(
            f"Audit sink {type(sink).__name__} failed for {operation_name}: {e}"
        )
        return False


def record_result(sink: AuditSink, result: MergeResult) -> bool:
    """Record a ``MergeResult``; counts of a failed invocation are reported as zero."""
    return record_safely(
        sink,
        result.operation,
        result.rows_inserted,
        result.rows_updated,
        result.status,
        result.detail,
    )


class CompositeAuditSink:
    """Fans a record out to several sinks, each one best-effort."""

    def __init__(self, sinks: list[AuditSink]):
        self.sinks = list(sinks)

    def record(
        self,
        operation_name: str,
        rows_inserted: int,
        rows_updated: int,
        status: str,
        detail: str | None = None,
    ) -> None:
        for sink in self.sinks:
            record_safely(sink, operation_name, rows_inserted, rows_updated, status, detail)
