"""
Date-range partitions for fact tables.

Partitions are fixed-width month spans aligned to the calendar (with the
default width of 3 they are calendar quarters). A fact row lives in the
Delta partition named after the span holding its date, and the registry in
``control/fact_partitions`` records every span ever created. Spans are only
ever added, never dropped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta

import polars as pl

from salesmart.catalog import TIMESTAMP
from salesmart.common.constants import (
    DEFAULT_PARTITION_SPAN_MONTHS,
    LAYER_CONTROL,
    PARTITION_COL,
    PARTITION_REGISTRY_TABLE,
    UNKNOWN_DATE,
)
from salesmart.common.errors import PartitionCoverageError
from salesmart.common.utils import Clock, utc_now
from salesmart.storage import DeltaWarehouse

logger = logging.getLogger(__name__)

PARTITION_REGISTRY_SCHEMA: dict[str, pl.DataType] = {
    "table_name": pl.String(),
    PARTITION_COL: pl.String(),
    "range_start": pl.Date(),
    "range_end": pl.Date(),
    "created_at": TIMESTAMP,
}


@dataclass(frozen=True)
class PartitionSpan:
    """A half-open date range ``[range_start, range_end)``."""

    name: str
    range_start: date
    range_end: date

    def covers(self, value: date) -> bool:
        return self.range_start <= value < self.range_end


def _month_index(value: date) -> int:
    return value.year * 12 + value.month - 1


def _from_month_index(index: int) -> date:
    return date(index // 12, index % 12 + 1, 1)


class PartitionManager:
    """
    Keeps a fact table's partitions covering every date it holds.

    Args:
        warehouse: Storage holding the registry table.
        table_name: Fact table the partitions belong to.
        span_months: Width of one partition.
    """

    def __init__(
        self,
        warehouse: DeltaWarehouse,
        table_name: str,
        span_months: int = DEFAULT_PARTITION_SPAN_MONTHS,
        clock: Clock = utc_now,
    ):
        if span_months < 1:
            raise ValueError(f"Partition span must be at least one month, got {span_months}")
        self.warehouse = warehouse
        self.table_name = table_name
        self.span_months = span_months
        self.clock = clock
        self.registry_path = warehouse.table_path(LAYER_CONTROL, PARTITION_REGISTRY_TABLE)

    def span_for(self, value: date) -> PartitionSpan:
        """The span containing ``value``."""
        index = _month_index(value)
        start_index = index - index % self.span_months
        start = _from_month_index(start_index)
        end = _from_month_index(start_index + self.span_months)
        return PartitionSpan(f"p{start.year:04d}{start.month:02d}", start, end)

    def partition_expr(self, date_col: str) -> pl.Expr:
        """Vectorized ``span_for(...).name`` for a date column."""
        index = pl.col(date_col).dt.year().cast(pl.Int64) * 12 + (
            pl.col(date_col).dt.month().cast(pl.Int64) - 1
        )
        start_index = index - index % self.span_months
        year = (start_index // 12).cast(pl.String).str.zfill(4)
        month = (start_index % 12 + 1).cast(pl.String).str.zfill(2)
        return pl.format("p{}{}", year, month).alias(PARTITION_COL)

    def spans_between(self, first: date, last: date) -> list[PartitionSpan]:
        """Contiguous spans covering ``first`` through ``last`` inclusive."""
        spans = [self.span_for(first)]
        while not spans[-1].covers(last):
            spans.append(self.span_for(spans[-1].range_end))
        return spans

    def registered(self) -> pl.DataFrame:
        """Registry rows for this table, ordered by range."""
        return (
            self.warehouse.read(self.registry_path, PARTITION_REGISTRY_SCHEMA)
            .filter(pl.col("table_name") == self.table_name)
            .sort("range_start")
        )

    def required_spans(
        self, dates: pl.Series, registered: pl.DataFrame | None = None
    ) -> list[PartitionSpan]:
        """
        Spans needed for ``dates``: the sentinel span when a date is unknown,
        plus contiguous spans from the earliest to the latest real date.

        With ``registered`` given, the real range also stretches over every
        span already registered, so coverage stays gap-free across runs.
        """
        present = dates.drop_nulls()
        real = present.filter(present != UNKNOWN_DATE)
        sentinel = self.span_for(UNKNOWN_DATE)
        spans: list[PartitionSpan] = []
        if (present == UNKNOWN_DATE).any():
            spans.append(sentinel)
        if real.is_empty():
            return spans

        first, last = real.min(), real.max()
        if registered is not None:
            known = registered.filter(pl.col(PARTITION_COL) != sentinel.name)
            if not known.is_empty():
                first = min(first, known["range_start"].min())
                last = max(last, known["range_end"].max() - timedelta(days=1))
        spans.extend(self.spans_between(first, last))
        return spans

    def ensure_coverage(self, dates: pl.Series) -> list[PartitionSpan]:
        """
        Register every span the given dates need and is still missing.

        Returns:
            The spans created by this call.

        Raises:
            PartitionCoverageError: when the registry cannot be written.
        """
        registered = self.registered()
        required = self.required_spans(dates, registered)
        if not required:
            return []

        known = set(registered[PARTITION_COL].to_list())
        missing = [s for s in required if s.name not in known]
        if not missing:
            return []

        created_at = self.clock()
        rows = pl.DataFrame(
            {
                "table_name": [self.table_name] * len(missing),
                PARTITION_COL: [s.name for s in missing],
                "range_start": [s.range_start for s in missing],
                "range_end": [s.range_end for s in missing],
                "created_at": [created_at] * len(missing),
            },
            schema=PARTITION_REGISTRY_SCHEMA,
        )
        try:
            self.warehouse.append(self.registry_path, rows)
        except Exception as e:
            raise PartitionCoverageError(
                f"Could not create partitions for {self.table_name}: {e}",
                {"entity": self.table_name, "partitions": ",".join(rows[PARTITION_COL])},
            ) from e

        logger.info(
            f"Created {len(missing)} partition(s) for {self.table_name}: "
            f"{', '.join(s.name for s in missing)}"
        )
        return missing

    def check_coverage(self, dates: pl.Series) -> None:
        """Raise when a date falls outside every registered partition."""
        known = set(self.registered()[PARTITION_COL].to_list())
        needed = {self.span_for(d).name for d in dates.drop_nulls().unique().to_list()}
        uncovered = sorted(needed - known)
        if uncovered:
            raise PartitionCoverageError(
                f"{self.table_name}: no partition registered for {uncovered}",
                {"entity": self.table_name},
            )
