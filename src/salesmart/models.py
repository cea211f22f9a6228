"""Result and batch types shared by every merge invocation."""

from __future__ import annotations

from dataclasses import dataclass, field

import polars as pl

from salesmart.common.errors import SalesMartError

STATUS_SUCCESS = "SUCCESS"
STATUS_FAILED = "FAILED"
STATUS_SKIPPED = "SKIPPED"


@dataclass
class MergeCounts:
    """Row counts produced by one committed merge."""

    rows_inserted: int = 0
    rows_updated: int = 0
    rows_rejected: int = 0

    def __add__(self, other: MergeCounts) -> MergeCounts:
        return MergeCounts(
            rows_inserted=self.rows_inserted + other.rows_inserted,
            rows_updated=self.rows_updated + other.rows_updated,
            rows_rejected=self.rows_rejected + other.rows_rejected,
        )


@dataclass
class MergeResult:
    """Outcome of a single merge invocation.

    A FAILED result always carries zero inserted/updated counts together with
    the error kind, the offending entity and the underlying message.
    """

    operation: str
    status: str
    rows_inserted: int = 0
    rows_updated: int = 0
    rows_rejected: int = 0
    duration_seconds: float = 0.0
    error_kind: str | None = None
    error_message: str | None = None
    error: SalesMartError | None = field(default=None, repr=False)

    @classmethod
    def success(
        cls, operation: str, counts: MergeCounts, duration_seconds: float = 0.0
    ) -> MergeResult:
        return cls(
            operation=operation,
            status=STATUS_SUCCESS,
            rows_inserted=counts.rows_inserted,
            rows_updated=counts.rows_updated,
            rows_rejected=counts.rows_rejected,
            duration_seconds=duration_seconds,
        )

    @classmethod
    def failure(
        cls, operation: str, error: SalesMartError, duration_seconds: float = 0.0
    ) -> MergeResult:
        return cls(
            operation=operation,
            status=STATUS_FAILED,
            duration_seconds=duration_seconds,
            error_kind=error.kind,
            error_message=error.message,
            error=error,
        )

    @classmethod
    def skipped(cls, operation: str, reason: str) -> MergeResult:
        return cls(operation=operation, status=STATUS_SKIPPED, error_message=reason)

    @property
    def succeeded(self) -> bool:
        return self.status == STATUS_SUCCESS

    @property
    def detail(self) -> str | None:
        """Diagnostic text for the audit sink."""
        if self.status == STATUS_FAILED:
            entity = self.error.details.get("entity", self.operation) if self.error else self.operation
            return f"{self.error_kind} in {entity}: {self.error_message}"
        if self.rows_rejected:
            return f"{self.rows_rejected} row(s) rejected"
        return self.error_message

    def raise_for_status(self) -> None:
        """Re-signal the failure that produced this result."""
        if self.status == STATUS_FAILED and self.error is not None:
            raise self.error


@dataclass
class ClassifiedBatch:
    """A staged batch after type coercion.

    ``valid`` holds typed rows ready for change detection, ``rejected`` holds
    the raw rows that could not be classified plus a ``reject_reason`` column.
    """

    valid: pl.DataFrame
    rejected: pl.DataFrame

    @property
    def rejected_count(self) -> int:
        return self.rejected.height


@dataclass
class ChangeSet:
    """NEW / CHANGED / UNCHANGED partition of one deduplicated batch.

    CHANGED rows carry the surrogate key of the stored row they differ from
    in the ``_target_key`` column.
    """

    new: pl.DataFrame
    changed: pl.DataFrame
    unchanged: pl.DataFrame

    @property
    def is_empty(self) -> bool:
        return self.new.is_empty() and self.changed.is_empty()
