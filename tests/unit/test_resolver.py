from datetime import datetime, timezone

import polars as pl
import pytest

from salesmart.catalog import CE_COUNTRIES, CE_PRODUCTS_SCD
from salesmart.common.constants import UNKNOWN_MEMBER_KEY
from salesmart.processing.merger import EntityMerger
from salesmart.processing.resolver import ReferenceResolver, unresolved_count

NOW = datetime(2024, 3, 1, tzinfo=timezone.utc)
LATER = datetime(2024, 4, 1, tzinfo=timezone.utc)


def _countries(rows: list[tuple[str, str]]) -> pl.DataFrame:
    return pl.DataFrame(
        {
            "countries_src_id": [code for code, _ in rows],
            "country_name": [code for code, _ in rows],
            "source_system": [system for _, system in rows],
            "source_entity": [f"SRC_{system}" for _, system in rows],
        }
    )


def _products(price: float) -> pl.DataFrame:
    return pl.DataFrame(
        {
            "products_src_id": ["P1"],
            "prod_category_id": [-1],
            "price_each": [price],
            "cost_each": [1.0],
            "source_system": ["SA_A"],
            "source_entity": ["SRC_A"],
        }
    )


@pytest.fixture
def countries_loaded(warehouse, allocator):
    EntityMerger(CE_COUNTRIES, warehouse, allocator).merge(
        _countries([("DE", "A"), ("DE", "B"), ("FR", "B")]).sort("source_system"), NOW
    )
    return warehouse


class TestResolve:
    def test_resolves_within_own_source_first(self, countries_loaded):
        resolver = ReferenceResolver(countries_loaded)
        key_a = resolver.resolve("ce_countries", "DE", "A")
        key_b = resolver.resolve("ce_countries", "DE", "B")
        assert key_a != key_b
        assert min(key_a, key_b) > 0

    def test_falls_back_to_lowest_key_in_any_source(self, countries_loaded):
        resolver = ReferenceResolver(countries_loaded)
        lowest = min(resolver.resolve("ce_countries", "DE", "A"), resolver.resolve("ce_countries", "DE", "B"))
        assert resolver.resolve("ce_countries", "DE", "C") == lowest
        assert resolver.resolve("ce_countries", "FR", "A") == resolver.resolve("ce_countries", "FR", "B")

    def test_missing_reference_is_unknown_member(self, countries_loaded):
        resolver = ReferenceResolver(countries_loaded)
        assert resolver.resolve("ce_countries", "XX") == UNKNOWN_MEMBER_KEY

    def test_unloaded_table_resolves_to_unknown_member(self, warehouse):
        assert ReferenceResolver(warehouse).resolve("ce_countries", "DE") == UNKNOWN_MEMBER_KEY

    def test_wrong_key_arity(self, warehouse):
        with pytest.raises(ValueError, match="keyed by"):
            ReferenceResolver(warehouse).resolve("ce_payments", "PAY1")

    def test_versioned_target_resolves_to_active_version(self, warehouse, allocator):
        merger = EntityMerger(CE_PRODUCTS_SCD, warehouse, allocator)
        merger.merge(_products(10.0), NOW)
        first = ReferenceResolver(warehouse).resolve("ce_products_scd", "P1")

        merger.merge(_products(12.0), LATER)
        second = ReferenceResolver(warehouse).resolve("ce_products_scd", "P1")

        assert second != first
        active = warehouse.read(warehouse.table_path("conformed", "ce_products_scd")).filter(
            pl.col("is_active") & (pl.col("prod_id") != UNKNOWN_MEMBER_KEY)
        )
        assert active["prod_id"].to_list() == [second]

    def test_snapshot_is_stable_until_refresh(self, countries_loaded, allocator):
        resolver = ReferenceResolver(countries_loaded)
        assert resolver.resolve("ce_countries", "IT", "A") == UNKNOWN_MEMBER_KEY

        EntityMerger(CE_COUNTRIES, countries_loaded, allocator).merge(
            _countries([("IT", "A")]), LATER
        )
        assert resolver.resolve("ce_countries", "IT", "A") == UNKNOWN_MEMBER_KEY

        resolver.refresh()
        assert resolver.resolve("ce_countries", "IT", "A") != UNKNOWN_MEMBER_KEY


class TestResolveColumn:
    def test_adds_key_and_attributes(self, warehouse, allocator):
        EntityMerger(CE_PRODUCTS_SCD, warehouse, allocator).merge(_products(10.0), NOW)
        frame = pl.DataFrame(
            {"code": ["P1", "P9", None], "source_system": ["SA_B", "SA_A", "SA_A"]}
        )

        resolved = ReferenceResolver(warehouse).resolve_column(
            frame,
            "ce_products_scd",
            {"code": "products_src_id"},
            "prod_id",
            attributes={"price_each": "price"},
        )

        assert resolved.columns == ["code", "source_system", "prod_id", "price"]
        assert resolved["prod_id"].to_list()[1:] == [UNKNOWN_MEMBER_KEY, UNKNOWN_MEMBER_KEY]
        assert resolved["prod_id"][0] > 0
        assert resolved["price"].to_list() == [10.0, None, None]

    def test_unresolved_count(self):
        frame = pl.DataFrame({"a": [1, -1, -1], "b": [2, 3, 4]})
        assert unresolved_count(frame, ["a", "b"]) == {"a": 2, "b": 0}
