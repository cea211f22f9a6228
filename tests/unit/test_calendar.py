from datetime import date, datetime, timezone

import polars as pl
import pytest

from salesmart.catalog import DIM_DATES_SCHEMA
from salesmart.common.constants import UNKNOWN_DATE
from salesmart.common.errors import MissingDependencyError
from salesmart.processing.calendar import DateDimensionLoader, calendar_rows

LOADED_AT = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _land_orders(warehouse, *order_dates: date) -> None:
    orders = pl.DataFrame(
        {"order_id": list(range(1, len(order_dates) + 1)), "order_dt": list(order_dates)},
        schema={"order_id": pl.Int64, "order_dt": pl.Date},
    )
    warehouse.append(warehouse.table_path("conformed", "ce_orders"), orders)


def _calendar(loader) -> pl.DataFrame:
    return loader.warehouse.read(loader.path, DIM_DATES_SCHEMA).sort("order_dt")


def test_calendar_rows_attributes():
    rows = calendar_rows(date(2024, 2, 28), date(2024, 3, 1), LOADED_AT)

    assert rows["order_dt"].to_list() == [date(2024, 2, 28), date(2024, 2, 29), date(2024, 3, 1)]
    leap_day = rows.row(1, named=True)
    assert leap_day["day_in_week"] == "Thursday"
    assert leap_day["day_number_in_month"] == 29
    assert leap_day["month_number"] == 2
    assert leap_day["month_name"] == "February"
    assert leap_day["quarter_number"] == 1
    assert leap_day["year"] == 2024
    assert rows.schema == pl.Schema(DIM_DATES_SCHEMA)


def test_missing_orders_table_is_a_missing_dependency(warehouse):
    with pytest.raises(MissingDependencyError, match="ce_orders"):
        DateDimensionLoader(warehouse).merge(LOADED_AT)


def test_covers_whole_years_of_order_dates(warehouse):
    _land_orders(warehouse, date(2024, 5, 1), UNKNOWN_DATE)
    loader = DateDimensionLoader(warehouse)

    counts = loader.merge(LOADED_AT)

    assert counts.rows_inserted == 366
    calendar = _calendar(loader)
    assert calendar.height == 367
    unknown = calendar.row(0, named=True)
    assert unknown["order_dt"] == UNKNOWN_DATE
    assert unknown["day_in_week"] == "n.a."
    assert unknown["year"] == -1
    assert calendar["order_dt"][1] == date(2024, 1, 1)
    assert calendar["order_dt"][-1] == date(2024, 12, 31)


def test_calendar_only_grows(warehouse):
    _land_orders(warehouse, date(2024, 5, 1))
    loader = DateDimensionLoader(warehouse)
    loader.merge(LOADED_AT)

    assert loader.merge(LOADED_AT).rows_inserted == 0

    _land_orders(warehouse, date(2025, 3, 3))
    assert loader.merge(LOADED_AT).rows_inserted == 365
    assert _calendar(loader).height == 1 + 366 + 365


def test_only_unknown_dates_leave_calendar_empty(warehouse):
    _land_orders(warehouse, UNKNOWN_DATE)
    loader = DateDimensionLoader(warehouse)

    assert loader.merge(LOADED_AT).rows_inserted == 0
    assert _calendar(loader)["order_dt"].to_list() == [UNKNOWN_DATE]
