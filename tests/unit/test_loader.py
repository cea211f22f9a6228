from datetime import datetime, timezone

import polars as pl

from salesmart.common.constants import (
    COMPANY_SALES_SYSTEM,
    INDIVIDUAL_SALES_ENTITY,
    INDIVIDUAL_SALES_SYSTEM,
)
from salesmart.processing.loader import StagingLoader, tag_source


def test_tag_source_labels_rows():
    frame = pl.DataFrame({"ordernumber": [10100, 10101], "refresh_dt": ["2024-01-10 00:00:00", None]})

    tagged = tag_source(frame, INDIVIDUAL_SALES_SYSTEM, INDIVIDUAL_SALES_ENTITY)

    assert tagged["ordernumber"].to_list() == ["10100", "10101"]
    assert set(tagged["source_system"]) == {INDIVIDUAL_SALES_SYSTEM}
    assert set(tagged["source_entity"]) == {INDIVIDUAL_SALES_ENTITY}
    assert tagged["observed_at"].to_list() == [
        datetime(2024, 1, 10, tzinfo=timezone.utc),
        None,
    ]


def test_tag_source_without_refresh_column():
    tagged = tag_source(pl.DataFrame({"ordernumber": ["1"]}), "SA_X", "SRC_X")
    assert tagged["observed_at"].to_list() == [None]


def test_stage_then_load(warehouse, individual_sales, company_sales, stage_sales):
    stage_sales(individual_sales(), company_sales())

    batch = StagingLoader(warehouse).load()

    assert batch.source_systems == sorted([INDIVIDUAL_SALES_SYSTEM, COMPANY_SALES_SYSTEM])
    assert batch.row_count == 3
    assert batch.frames[COMPANY_SALES_SYSTEM]["customername"].to_list() == ["Acme GmbH"]


def test_restaging_replaces_snapshot(warehouse, individual_sales, company_sales, stage_sales):
    stage_sales(individual_sales(), company_sales())
    stage_sales(individual_sales().head(1), company_sales())

    assert StagingLoader(warehouse).load().row_count == 2


def test_missing_source_reads_empty(warehouse):
    batch = StagingLoader(warehouse).load()

    assert batch.is_empty()
    assert batch.frames[INDIVIDUAL_SALES_SYSTEM].columns == [
        "source_system",
        "source_entity",
        "observed_at",
    ]


def test_stage_csv(warehouse, tmp_path):
    csv_path = tmp_path / "sales.csv"
    csv_path.write_text("ordernumber,price_each\n00100,10.50\n", encoding="utf-8")
    loader = StagingLoader(warehouse)

    loader.stage_csv(csv_path, INDIVIDUAL_SALES_SYSTEM, INDIVIDUAL_SALES_ENTITY)

    frame = loader.load_full_snapshot(INDIVIDUAL_SALES_SYSTEM, INDIVIDUAL_SALES_ENTITY)
    # Text is kept verbatim, leading zeros included
    assert frame["ordernumber"].to_list() == ["00100"]
    assert frame["price_each"].to_list() == ["10.50"]
