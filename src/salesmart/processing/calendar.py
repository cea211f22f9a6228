"""
Calendar dimension (``dim_dates``).

One row per day, keyed by the date itself. The calendar covers whole years
from the earliest to the latest order date and only ever grows; the
``UNKNOWN_DATE`` row stands in for orders without a usable date.
"""

from __future__ import annotations

import logging
from datetime import date, datetime

import polars as pl

from salesmart.catalog import CE_ORDERS, DIM_DATES, DIM_DATES_SCHEMA, FACT_DATE_COL
from salesmart.common.constants import (
    DEFAULT_VALID_FROM,
    INSERT_DT_COL,
    LAYER_DIMENSION,
    UNASSIGNED_LABEL,
    UNASSIGNED_NUMBER,
    UNKNOWN_DATE,
)
from salesmart.common.errors import MissingDependencyError
from salesmart.models import MergeCounts
from salesmart.storage import DeltaWarehouse

logger = logging.getLogger(__name__)


def calendar_rows(start: date, end: date, loaded_at: datetime) -> pl.DataFrame:
    """Every day from ``start`` to ``end`` inclusive with its calendar attributes."""
    days = pl.DataFrame(
        {FACT_DATE_COL: pl.date_range(start, end, interval="1d", eager=True)}
    )
    day = pl.col(FACT_DATE_COL).dt
    return days.with_columns(
        day.strftime("%A").alias("day_in_week"),
        day.day().cast(pl.Int64).alias("day_number_in_month"),
        day.month().cast(pl.Int64).alias("month_number"),
        day.strftime("%B").alias("month_name"),
        day.quarter().cast(pl.Int64).alias("quarter_number"),
        day.year().cast(pl.Int64).alias("year"),
        pl.lit(loaded_at).alias(INSERT_DT_COL),
    ).select([pl.col(c).cast(t) for c, t in DIM_DATES_SCHEMA.items()])


def unknown_date_row() -> pl.DataFrame:
    return pl.DataFrame(
        [
            {
                FACT_DATE_COL: UNKNOWN_DATE,
                "day_in_week": UNASSIGNED_LABEL,
                "day_number_in_month": UNASSIGNED_NUMBER,
                "month_number": UNASSIGNED_NUMBER,
                "month_name": UNASSIGNED_LABEL,
                "quarter_number": UNASSIGNED_NUMBER,
                "year": UNASSIGNED_NUMBER,
                INSERT_DT_COL: DEFAULT_VALID_FROM,
            }
        ],
        schema=DIM_DATES_SCHEMA,
    )


class DateDimensionLoader:
    """Keeps ``dim_dates`` covering every order date of the conformed layer."""

    def __init__(self, warehouse: DeltaWarehouse):
        self.warehouse = warehouse
        self.path = warehouse.table_path(LAYER_DIMENSION, DIM_DATES)

    def ensure_table(self) -> bool:
        """Create the calendar holding only its unknown date row."""
        if self.warehouse.exists(self.path):
            return False
        logger.info(f"Creating {LAYER_DIMENSION}.{DIM_DATES} at {self.path}")
        self.warehouse.append(self.path, unknown_date_row())
        return True

    def required_range(self) -> tuple[date, date] | None:
        """First and last day of the years holding order dates, None when there are none."""
        orders_path = self.warehouse.table_path(CE_ORDERS.layer, CE_ORDERS.table_name)
        if not self.warehouse.exists(orders_path):
            raise MissingDependencyError(
                f"{DIM_DATES} depends on {CE_ORDERS.table_name}, which has not been loaded",
                {"entity": DIM_DATES, "dependency": CE_ORDERS.table_name},
            )
        bounds = (
            self.warehouse.scan(orders_path)
            .filter(pl.col(FACT_DATE_COL) != UNKNOWN_DATE)
            .select(
                pl.col(FACT_DATE_COL).min().alias("first"),
                pl.col(FACT_DATE_COL).max().alias("last"),
            )
            .collect()
            .row(0)
        )
        if bounds[0] is None:
            return None
        return date(bounds[0].year, 1, 1), date(bounds[1].year, 12, 31)

    def merge(self, now: datetime) -> MergeCounts:
        """Insert the days still missing from the calendar."""
        self.ensure_table()
        required = self.required_range()
        if required is None:
            logger.info(f"{DIM_DATES}: no order dates to cover")
            return MergeCounts()

        existing = self.warehouse.read(self.path, DIM_DATES_SCHEMA).select(FACT_DATE_COL)
        missing = calendar_rows(*required, loaded_at=now).join(
            existing, on=FACT_DATE_COL, how="anti"
        )
        if missing.is_empty():
            return MergeCounts()

        self.warehouse.merge(
            self.path, missing, f"t.{FACT_DATE_COL} = s.{FACT_DATE_COL}"
        ).when_not_matched_insert_all().execute()
        logger.info(
            f"{DIM_DATES}: inserted {missing.height} day(s) "
            f"({required[0]} to {required[1]})"
        )
        return MergeCounts(rows_inserted=missing.height)
