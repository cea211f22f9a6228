from datetime import datetime, timezone

import polars as pl
import pytest

from salesmart.catalog import CE_CUSTOMERS, CE_PRODUCTS_SCD, table_schema
from salesmart.common.config import EntityConfig
from salesmart.common.constants import (
    DEFAULT_VALID_FROM,
    OPEN_ENDED_VALIDITY,
    UNKNOWN_MEMBER_KEY,
)
from salesmart.common.errors import InvariantViolationError
from salesmart.processing.key_generator import SequenceKeyAllocator
from salesmart.processing.merger import (
    EntityMerger,
    Type1Strategy,
    Type2Strategy,
    create_merge_strategy,
)

T1 = datetime(2024, 1, 1, tzinfo=timezone.utc)
T2 = datetime(2024, 2, 1, tzinfo=timezone.utc)
T3 = datetime(2024, 3, 1, tzinfo=timezone.utc)


def _customers(last_names: dict[str, str]) -> pl.DataFrame:
    codes = sorted(last_names)
    return pl.DataFrame(
        {
            "customers_src_id": codes,
            "cust_first_name": ["First"] * len(codes),
            "cust_last_name": [last_names[c] for c in codes],
            "cust_company_name": ["n.a."] * len(codes),
            "cust_type": ["individual"] * len(codes),
            "address_id": [-1] * len(codes),
            "source_system": ["SA_INDIVIDUAL_SALES"] * len(codes),
            "source_entity": ["SRC_INDIVIDUAL_SALES"] * len(codes),
        }
    )


def _products(prices: dict[str, float]) -> pl.DataFrame:
    codes = sorted(prices)
    return pl.DataFrame(
        {
            "products_src_id": codes,
            "prod_category_id": [-1] * len(codes),
            "price_each": [prices[c] for c in codes],
            "cost_each": [6.0] * len(codes),
            "source_system": ["SA_INDIVIDUAL_SALES"] * len(codes),
            "source_entity": ["SRC_INDIVIDUAL_SALES"] * len(codes),
        }
    )


def _table(warehouse, entity: EntityConfig) -> pl.DataFrame:
    return warehouse.read(warehouse.table_path(entity.layer, entity.table_name))


def _members(warehouse, entity: EntityConfig) -> pl.DataFrame:
    return _table(warehouse, entity).filter(pl.col(entity.surrogate_key) != UNKNOWN_MEMBER_KEY)


def test_strategy_registry(warehouse, allocator):
    assert isinstance(create_merge_strategy(CE_CUSTOMERS, warehouse, allocator), Type1Strategy)
    assert isinstance(create_merge_strategy(CE_PRODUCTS_SCD, warehouse, allocator), Type2Strategy)


class TestType1:
    def test_first_load_inserts_with_unknown_member(self, warehouse, allocator):
        counts = EntityMerger(CE_CUSTOMERS, warehouse, allocator).merge(
            _customers({"C1": "Schmidt", "C2": "Meyer"}), T1
        )

        assert (counts.rows_inserted, counts.rows_updated) == (2, 0)
        table = _table(warehouse, CE_CUSTOMERS)
        assert table.height == 3
        assert table.filter(pl.col("cust_id") == UNKNOWN_MEMBER_KEY)["cust_last_name"][0] == "n.a."
        assert sorted(_members(warehouse, CE_CUSTOMERS)["cust_id"].to_list()) == [1, 2]

    def test_rerun_is_idempotent(self, warehouse, allocator):
        merger = EntityMerger(CE_CUSTOMERS, warehouse, allocator)
        batch = _customers({"C1": "Schmidt", "C2": "Meyer"})
        merger.merge(batch, T1)
        before = _table(warehouse, CE_CUSTOMERS).sort("cust_id")

        counts = merger.merge(batch, T2)

        assert (counts.rows_inserted, counts.rows_updated) == (0, 0)
        assert _table(warehouse, CE_CUSTOMERS).sort("cust_id").equals(before)

    def test_change_updates_in_place(self, warehouse, allocator):
        merger = EntityMerger(CE_CUSTOMERS, warehouse, allocator)
        merger.merge(_customers({"C1": "Schmidt", "C2": "Meyer"}), T1)
        key_before = _members(warehouse, CE_CUSTOMERS).filter(pl.col("customers_src_id") == "C1")[
            "cust_id"
        ][0]

        counts = merger.merge(_customers({"C1": "Schmitt", "C2": "Meyer", "C3": "Neu"}), T2)

        assert (counts.rows_inserted, counts.rows_updated) == (1, 1)
        c1 = _members(warehouse, CE_CUSTOMERS).filter(pl.col("customers_src_id") == "C1")
        assert c1.height == 1
        assert c1["cust_id"][0] == key_before
        assert c1["cust_last_name"][0] == "Schmitt"
        assert c1["insert_dt"][0] == T1
        assert c1["update_dt"][0] == T2

    def test_keys_never_reused_with_fresh_allocator(self, warehouse, allocator):
        EntityMerger(CE_CUSTOMERS, warehouse, allocator).merge(_customers({"C1": "A"}), T1)
        EntityMerger(CE_CUSTOMERS, warehouse, SequenceKeyAllocator()).merge(
            _customers({"C2": "B"}), T2
        )

        assert sorted(_members(warehouse, CE_CUSTOMERS)["cust_id"].to_list()) == [1, 2]

    def test_empty_batch_is_a_noop(self, warehouse, allocator):
        counts = EntityMerger(CE_CUSTOMERS, warehouse, allocator).merge(_customers({}), T1)
        assert (counts.rows_inserted, counts.rows_updated) == (0, 0)
        assert _table(warehouse, CE_CUSTOMERS).height == 1


class TestType2:
    def test_price_change_retires_and_opens_version(self, warehouse, allocator):
        """P1 at 10.00 becomes 12.00: V1 is retired, V2 is the active version."""
        merger = EntityMerger(CE_PRODUCTS_SCD, warehouse, allocator)
        merger.merge(_products({"P1": 10.0}), T1)
        v1_key = _members(warehouse, CE_PRODUCTS_SCD)["prod_id"][0]

        counts = merger.merge(_products({"P1": 12.0}), T2)

        assert (counts.rows_inserted, counts.rows_updated) == (1, 1)
        versions = _members(warehouse, CE_PRODUCTS_SCD).sort("valid_from")
        assert versions.height == 2

        v1, v2 = versions.row(0, named=True), versions.row(1, named=True)
        assert v1["prod_id"] == v1_key
        assert v1["is_active"] is False
        assert v1["valid_from"] == DEFAULT_VALID_FROM
        assert v1["valid_to"] == T2
        assert v1["price_each"] == 10.0

        assert v2["prod_id"] > v1_key
        assert v2["is_active"] is True
        assert v2["valid_from"] == T2
        assert v2["valid_to"] == OPEN_ENDED_VALIDITY
        assert v2["price_each"] == 12.0

    def test_rerun_is_idempotent(self, warehouse, allocator):
        merger = EntityMerger(CE_PRODUCTS_SCD, warehouse, allocator)
        merger.merge(_products({"P1": 10.0, "P2": 20.0}), T1)
        merger.merge(_products({"P1": 12.0, "P2": 20.0}), T2)
        before = _table(warehouse, CE_PRODUCTS_SCD).sort("prod_id")

        counts = merger.merge(_products({"P1": 12.0, "P2": 20.0}), T3)

        assert (counts.rows_inserted, counts.rows_updated) == (0, 0)
        assert _table(warehouse, CE_PRODUCTS_SCD).sort("prod_id").equals(before)

    def test_exactly_one_active_version_and_no_gaps(self, warehouse, allocator):
        merger = EntityMerger(CE_PRODUCTS_SCD, warehouse, allocator)
        merger.merge(_products({"P1": 10.0, "P2": 5.0}), T1)
        merger.merge(_products({"P1": 11.0, "P2": 5.0}), T2)
        merger.merge(_products({"P1": 12.0, "P2": 6.0}), T3)

        members = _members(warehouse, CE_PRODUCTS_SCD)
        active = members.group_by("products_src_id").agg(pl.col("is_active").sum())
        assert active["is_active"].to_list() == [1, 1]

        for code in ("P1", "P2"):
            versions = members.filter(pl.col("products_src_id") == code).sort("valid_from")
            starts = versions["valid_from"].to_list()
            ends = versions["valid_to"].to_list()
            assert starts[0] == DEFAULT_VALID_FROM
            assert ends[-1] == OPEN_ENDED_VALIDITY
            assert starts[1:] == ends[:-1]

        assert members.filter(pl.col("products_src_id") == "P1").height == 3

    def test_two_active_versions_abort_the_merge(self, warehouse, allocator):
        merger = EntityMerger(CE_PRODUCTS_SCD, warehouse, allocator)
        merger.merge(_products({"P1": 10.0}), T1)
        path = warehouse.table_path("conformed", "ce_products_scd")
        duplicate = _members(warehouse, CE_PRODUCTS_SCD).with_columns(pl.lit(99, dtype=pl.Int64).alias("prod_id"))
        warehouse.append(path, duplicate.select(list(table_schema(CE_PRODUCTS_SCD))))
        version = warehouse.version(path)

        with pytest.raises(InvariantViolationError):
            merger.merge(_products({"P1": 12.0}), T2)

        assert warehouse.version(path) == version
